import asyncio
import dataclasses
from datetime import timedelta
from types import MappingProxyType

import pytest
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql

from jobcore.v1.analytics.models import LinkClick
from jobcore.v1.core.exceptions import NonRetryableJobError
from jobcore.v1.infra.jobs import catalog
from jobcore.v1.infra.jobs.catalog import JobQueue, JobType
from jobcore.v1.infra.jobs.models import Job, JobStatus
from jobcore.v1.infra.jobs.repository import (
    JobRepository,
    family_lock_key,
    family_lock_statement,
)


async def always_fail(ctx, payload):
    raise RuntimeError("upstream unavailable")


async def test_successful_job_is_recorded(make_dispatcher, make_handler, enqueue, load_job):
    handler = make_handler(JobType.EMAIL_DELIVERY)
    dispatcher = make_dispatcher(handler)
    job = await enqueue(JobType.EMAIL_DELIVERY, {"to": "a@example.com"})

    assert await dispatcher.run_once(JobQueue.HIGH) == 1

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.SUCCEEDED.value
    assert stored.attempt == 1
    assert stored.result == {"ok": True}
    assert stored.locked_by is None
    assert stored.completed_at is not None
    assert handler.calls == [{"attempt": 1, "payload": {"to": "a@example.com"}}]
    assert dispatcher.active_count() == 0


async def test_job_fails_after_max_attempts(
    make_dispatcher, make_handler, enqueue, load_job, clock, alerts
):
    """Three consecutive failures exhaust max_attempts=3; the job is never leased again."""
    handler = make_handler(JobType.EMAIL_DELIVERY, always_fail)
    dispatcher = make_dispatcher(handler)
    job = await enqueue(JobType.EMAIL_DELIVERY, max_attempts=3)

    assert await dispatcher.run_once(JobQueue.HIGH) == 1
    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.QUEUED.value
    assert stored.attempt == 1
    assert stored.error_code == "RETRY_SCHEDULED"
    assert "upstream unavailable" in stored.last_error

    # Not due until the backoff elapses (base 10s, no jitter)
    assert await dispatcher.run_once(JobQueue.HIGH) == 0
    clock.advance(10)
    assert await dispatcher.run_once(JobQueue.HIGH) == 1
    assert (await load_job(job.job_id)).attempt == 2

    clock.advance(20)
    assert await dispatcher.run_once(JobQueue.HIGH) == 1

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.attempt == 3
    assert stored.error_code == "MAX_ATTEMPTS_EXCEEDED"
    assert stored.failed_at is not None

    clock.advance(86_400)
    assert await dispatcher.run_once() == 0
    assert len(handler.calls) == 3

    [alert] = alerts.of_kind("job.failed")
    assert alert.details["job_id"] == str(job.job_id)
    assert alert.details["attempt"] == 3
    assert alert.details["error_code"] == "MAX_ATTEMPTS_EXCEEDED"


async def test_retry_backoff_grows(make_dispatcher, make_handler, enqueue, load_job, clock):
    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY, always_fail))
    job = await enqueue(JobType.EMAIL_DELIVERY, max_attempts=5)

    await dispatcher.run_once(JobQueue.HIGH)
    first = (await load_job(job.job_id)).next_attempt_at
    assert (first - clock()).total_seconds() == pytest.approx(10)

    clock.advance(10)
    await dispatcher.run_once(JobQueue.HIGH)
    second = (await load_job(job.job_id)).next_attempt_at
    assert (second - clock()).total_seconds() == pytest.approx(20)


async def test_only_one_worker_wins_a_lease(session_factory, enqueue, clock):
    job = await enqueue(JobType.EMAIL_DELIVERY)

    async with session_factory() as session:
        repo = JobRepository(session)
        first = await repo.try_lease(job.job_id, "worker-1", clock())
        second = await repo.try_lease(job.job_id, "worker-2", clock())
        await session.commit()

    assert (first, second) == (True, False)


async def test_concurrent_claims_lease_each_job_once(make_dispatcher, make_handler, enqueue, load_job):
    handler = make_handler(JobType.EMAIL_DELIVERY)
    one = make_dispatcher(handler, worker_id="worker-1")
    two = make_dispatcher(handler, worker_id="worker-2")
    job = await enqueue(JobType.EMAIL_DELIVERY)

    claimed = await asyncio.gather(one.claim(JobQueue.HIGH), two.claim(JobQueue.HIGH))

    assert sorted(len(jobs) for jobs in claimed) == [0, 1]
    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.RUNNING.value
    assert stored.attempt == 1
    assert stored.locked_by in {"worker-1", "worker-2"}


async def test_family_concurrency_limit(make_dispatcher, make_handler, enqueue, session_factory):
    release = asyncio.Event()
    running = 0
    peak = 0

    async def capture(ctx, payload):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await release.wait()
        running -= 1
        return None

    handler = make_handler(JobType.SCREENSHOT_CAPTURE, capture)
    dispatcher = make_dispatcher(handler, worker_id="worker-1")
    other = make_dispatcher(handler, worker_id="worker-2")
    for n in range(5):
        await enqueue(JobType.SCREENSHOT_CAPTURE, {"url": f"https://example.com/{n}"})

    tasks = await dispatcher.dispatch(JobQueue.SCREENSHOT)
    assert len(tasks) == 3
    assert dispatcher.active_count(JobQueue.SCREENSHOT) == 3

    # The ceiling holds across processes and for the same process
    assert await other.dispatch(JobQueue.SCREENSHOT) == []
    assert await dispatcher.dispatch(JobQueue.SCREENSHOT) == []

    release.set()
    await asyncio.gather(*tasks)
    assert dispatcher.active_count() == 0

    assert await dispatcher.run_once(JobQueue.SCREENSHOT) == 2
    assert peak <= 3

    async with session_factory() as session:
        counts = await JobRepository(session).counts_by(Job.status)
    assert counts == {JobStatus.SUCCEEDED.value: 5}


async def test_run_once_serves_every_family(make_dispatcher, make_handler, enqueue):
    dispatcher = make_dispatcher(
        make_handler(JobType.EMAIL_DELIVERY), make_handler(JobType.CLICK_ROLLUP)
    )
    await enqueue(JobType.EMAIL_DELIVERY)
    await enqueue(JobType.CLICK_ROLLUP)

    assert await dispatcher.run_once() == 2
    assert await dispatcher.run_once() == 0


async def test_future_jobs_are_not_leased(make_dispatcher, make_handler, enqueue, clock):
    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY))
    await enqueue(JobType.EMAIL_DELIVERY, scheduled_at=clock() + timedelta(minutes=5))

    assert await dispatcher.run_once() == 0
    clock.advance(300)
    assert await dispatcher.run_once() == 1


async def test_non_retryable_error_fails_immediately(
    make_dispatcher, make_handler, enqueue, load_job, alerts
):
    async def reject(ctx, payload):
        raise NonRetryableJobError("recipient is missing")

    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY, reject))
    job = await enqueue(JobType.EMAIL_DELIVERY, max_attempts=5)

    await dispatcher.run_once(JobQueue.HIGH)

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.attempt == 1
    assert stored.error_code == "NON_RETRYABLE"
    assert len(alerts.of_kind("job.failed")) == 1


async def test_handler_timeout_consumes_an_attempt(
    make_dispatcher, make_handler, enqueue, load_job, monkeypatch
):
    families = dict(catalog.QUEUE_FAMILIES)
    families[JobQueue.HIGH] = dataclasses.replace(families[JobQueue.HIGH], timeout_s=0.05)
    monkeypatch.setattr(catalog, "QUEUE_FAMILIES", MappingProxyType(families))

    async def hang(ctx, payload):
        await asyncio.sleep(5)

    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY, hang))
    job = await enqueue(JobType.EMAIL_DELIVERY)

    await dispatcher.run_once(JobQueue.HIGH)

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.QUEUED.value
    assert stored.attempt == 1
    assert stored.error_code == "HANDLER_TIMEOUT"
    assert "timed out" in stored.last_error


async def test_unregistered_type_fails_without_retry(
    make_dispatcher, make_handler, enqueue, load_job, alerts
):
    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY))
    job = await enqueue(JobType.STOCK_REFRESH)

    assert await dispatcher.run_once(JobQueue.HIGH) == 1

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.error_code == "HANDLER_NOT_REGISTERED"
    assert alerts.of_kind("job.failed")[0].details["job_type"] == "STOCK_REFRESH"


async def test_row_with_foreign_type_fails_and_frees_its_slot(
    make_dispatcher, make_handler, enqueue, load_job, session_factory, alerts
):
    dispatcher = make_dispatcher(make_handler(JobType.RSS_FEED_REFRESH))
    job = await enqueue(JobType.RSS_FEED_REFRESH)
    async with session_factory() as session:
        await session.execute(
            update(Job).where(Job.id == job.job_id).values(type="LEGACY_TYPE")
        )
        await session.commit()

    assert await dispatcher.run_once(JobQueue.DEFAULT) == 1

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.error_code == "HANDLER_NOT_REGISTERED"
    assert stored.locked_by is None
    assert dispatcher.active_job_ids() == []
    assert await dispatcher.heartbeat() == 0

    alert = alerts.of_kind("job.failed")[0]
    assert alert.details["job_type"] == "LEGACY_TYPE"
    assert alert.details["error_code"] == "HANDLER_NOT_REGISTERED"

    # The family still has its full set of slots
    await enqueue(JobType.RSS_FEED_REFRESH)
    assert await dispatcher.run_once(JobQueue.DEFAULT) == 1


async def test_stale_lease_is_requeued(make_dispatcher, make_handler, enqueue, load_job, clock):
    crashed = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY), worker_id="crashed")
    survivor = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY), worker_id="survivor")
    job = await enqueue(JobType.EMAIL_DELIVERY, max_attempts=3)

    # Lease without ever executing, as if the worker died
    assert len(await crashed.claim(JobQueue.HIGH)) == 1

    assert await survivor.recover_stale() == []
    clock.advance(301)
    assert await survivor.recover_stale() == [(job.job_id, JobStatus.QUEUED)]

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.QUEUED.value
    assert stored.locked_by is None
    assert stored.error_code == "WORKER_TIMEOUT"

    assert await survivor.run_once(JobQueue.HIGH) == 1
    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.SUCCEEDED.value
    assert stored.attempt == 2


async def test_stale_lease_on_last_attempt_fails(
    make_dispatcher, make_handler, enqueue, load_job, clock, alerts
):
    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY))
    job = await enqueue(JobType.EMAIL_DELIVERY, max_attempts=1)
    await dispatcher.claim(JobQueue.HIGH)

    clock.advance(301)
    assert await dispatcher.recover_stale() == [(job.job_id, JobStatus.FAILED)]
    assert (await load_job(job.job_id)).status == JobStatus.FAILED.value
    assert alerts.of_kind("job.failed")[0].details["error_code"] == "WORKER_TIMEOUT"


async def test_heartbeat_keeps_lease_fresh(
    make_dispatcher, make_handler, enqueue, load_job, clock
):
    release = asyncio.Event()

    async def slow(ctx, payload):
        await release.wait()
        return {"done": True}

    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY, slow))
    job = await enqueue(JobType.EMAIL_DELIVERY)
    tasks = await dispatcher.dispatch(JobQueue.HIGH)

    clock.advance(200)
    assert await dispatcher.heartbeat() == 1
    assert (await load_job(job.job_id)).heartbeat_at == clock()

    # Heartbeat 200s ago is inside the 300s visibility window
    clock.advance(200)
    assert await dispatcher.recover_stale() == []

    release.set()
    await asyncio.gather(*tasks)
    assert (await load_job(job.job_id)).status == JobStatus.SUCCEEDED.value
    assert await dispatcher.heartbeat() == 0


async def test_domain_write_is_visible_when_success_is_recorded(
    make_dispatcher, make_handler, enqueue, load_job, session_factory, clock
):
    async def record_click(ctx, payload):
        async with ctx.session() as session:
            session.add(
                LinkClick(
                    click_date=clock().date(),
                    click_timestamp=clock(),
                    click_type=payload["click_type"],
                )
            )
        return {"written": 1}

    dispatcher = make_dispatcher(make_handler(JobType.CLICK_ROLLUP, record_click))
    job = await enqueue(JobType.CLICK_ROLLUP, {"click_type": "listing"})

    await dispatcher.run_once(JobQueue.LOW)

    assert (await load_job(job.job_id)).status == JobStatus.SUCCEEDED.value
    async with session_factory() as session:
        clicks = (await session.execute(select(LinkClick))).scalars().all()
    assert [c.click_type for c in clicks] == ["listing"]


async def test_lost_lease_outcome_is_discarded(
    make_dispatcher, make_handler, enqueue, load_job, session_factory
):
    async def stolen(ctx, payload):
        async with session_factory() as session:
            await session.execute(
                update(Job).where(Job.id == ctx.job_id).values(locked_by="someone-else")
            )
            await session.commit()
        return {"ignored": True}

    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY, stolen))
    job = await enqueue(JobType.EMAIL_DELIVERY)

    await dispatcher.run_once(JobQueue.HIGH)

    stored = await load_job(job.job_id)
    assert stored.status == JobStatus.RUNNING.value
    assert stored.locked_by == "someone-else"
    assert stored.result is None


async def test_start_and_stop(make_dispatcher, make_handler, enqueue, load_job):
    dispatcher = make_dispatcher(make_handler(JobType.EMAIL_DELIVERY))
    job = await enqueue(JobType.EMAIL_DELIVERY)

    runner = asyncio.create_task(dispatcher.start())
    for _ in range(200):
        if (await load_job(job.job_id)).status == JobStatus.SUCCEEDED.value:
            break
        await asyncio.sleep(0.01)

    assert dispatcher.running
    assert dispatcher.status()["worker_id"] == "worker-1"
    with pytest.raises(RuntimeError, match="already running"):
        await dispatcher.start()

    await dispatcher.stop()
    await asyncio.wait_for(runner, timeout=5)

    assert not dispatcher.running
    assert (await load_job(job.job_id)).status == JobStatus.SUCCEEDED.value


def test_family_lock_is_stable_and_distinct_per_family():
    keys = {queue: family_lock_key(queue) for queue in JobQueue}
    assert len(set(keys.values())) == len(keys)
    assert family_lock_key(JobQueue.SCREENSHOT) == keys[JobQueue.SCREENSHOT]
    assert all(0 <= key < 2**63 for key in keys.values())

    sql = str(family_lock_statement(JobQueue.SCREENSHOT).compile(dialect=postgresql.dialect()))
    assert "pg_advisory_xact_lock" in sql


async def test_family_lock_is_a_no_op_on_sqlite(session_factory, enqueue):
    await enqueue(JobType.RSS_FEED_REFRESH)
    async with session_factory() as session:
        repo = JobRepository(session)
        await repo.lock_family(JobQueue.DEFAULT)
        assert await repo.count_running(JobQueue.DEFAULT) == 0
