import pytest

from jobcore.v1.core.exceptions import UnknownJobTypeError
from jobcore.v1.infra.jobs.catalog import (
    QUEUE_FAMILIES,
    JobQueue,
    JobType,
    parse_job_type,
    queue_of,
    types_in,
)


def test_every_type_belongs_to_exactly_one_family():
    """Each job type resolves to one family and appears in that family's list only."""
    for job_type in JobType:
        owners = [queue for queue in JobQueue if job_type in types_in(queue)]
        assert owners == [job_type.queue]


def test_every_family_has_a_definition():
    assert set(QUEUE_FAMILIES) == set(JobQueue)
    for queue, family in QUEUE_FAMILIES.items():
        assert family.name is queue
        assert family.concurrency_limit > 0
        assert family.timeout_s > 0


def test_family_priorities_are_distinct_and_high_first():
    priorities = [family.priority for family in QUEUE_FAMILIES.values()]
    assert len(set(priorities)) == len(priorities)
    assert min(QUEUE_FAMILIES.values(), key=lambda f: f.priority).name is JobQueue.HIGH


@pytest.mark.parametrize(
    "job_type, queue",
    [
        (JobType.EMAIL_DELIVERY, JobQueue.HIGH),
        (JobType.RSS_FEED_REFRESH, JobQueue.DEFAULT),
        (JobType.CLICK_ROLLUP, JobQueue.LOW),
        (JobType.AI_TAGGING, JobQueue.BULK),
        (JobType.SCREENSHOT_CAPTURE, JobQueue.SCREENSHOT),
    ],
)
def test_queue_of(job_type, queue):
    assert queue_of(job_type).name is queue
    assert queue_of(job_type.value).name is queue


def test_screenshot_family_is_tightly_bounded():
    family = JobQueue.SCREENSHOT.family
    assert family.concurrency_limit == 3
    assert family.max_attempts == 3


def test_parse_job_type_rejects_unknown_types():
    assert parse_job_type("AI_TAGGING") is JobType.AI_TAGGING

    with pytest.raises(UnknownJobTypeError) as exc_info:
        parse_job_type("NOT_A_JOB")
    assert exc_info.value.status_code == 422
    assert exc_info.value.details == {"job_type": "NOT_A_JOB"}


def test_catalog_is_read_only():
    with pytest.raises(TypeError):
        QUEUE_FAMILIES[JobQueue.HIGH] = QUEUE_FAMILIES[JobQueue.LOW]  # type: ignore[index]
