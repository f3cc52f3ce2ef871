"""
Static queue family and job type catalog.

Every job type maps to exactly one queue family. A family carries the
priority used when ordering candidates, the ceiling on jobs from that
family running at the same time, and its retry/timeout policy.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from jobcore.v1.core.exceptions import UnknownJobTypeError


class JobQueue(str, Enum):
    """Queue families, from tightest SLA to most resource constrained."""

    HIGH = "HIGH"
    DEFAULT = "DEFAULT"
    LOW = "LOW"
    BULK = "BULK"
    SCREENSHOT = "SCREENSHOT"

    @property
    def family(self) -> "QueueFamily":
        return QUEUE_FAMILIES[self]


@dataclass(frozen=True)
class QueueFamily:
    """Scheduling and resource policy shared by every job in a family."""

    name: JobQueue
    priority: int  # lower value is served first
    concurrency_limit: int
    timeout_s: float
    description: str
    max_attempts: int | None = None  # None falls back to settings


QUEUE_FAMILIES: MappingProxyType[JobQueue, QueueFamily] = MappingProxyType(
    {
        JobQueue.HIGH: QueueFamily(
            name=JobQueue.HIGH,
            priority=0,
            concurrency_limit=20,
            timeout_s=60,
            description="Time-sensitive operations (p95 < 30s)",
        ),
        JobQueue.DEFAULT: QueueFamily(
            name=JobQueue.DEFAULT,
            priority=5,
            concurrency_limit=10,
            timeout_s=300,
            description="Periodic maintenance tasks (p95 < 5min)",
        ),
        JobQueue.SCREENSHOT: QueueFamily(
            name=JobQueue.SCREENSHOT,
            priority=6,
            concurrency_limit=3,
            timeout_s=120,
            description="Headless browser captures, protects the Chromium pool",
            max_attempts=3,
        ),
        JobQueue.LOW: QueueFamily(
            name=JobQueue.LOW,
            priority=7,
            concurrency_limit=5,
            timeout_s=900,
            description="Background cleanup and aggregations (p95 < 30min)",
        ),
        JobQueue.BULK: QueueFamily(
            name=JobQueue.BULK,
            priority=8,
            concurrency_limit=8,
            timeout_s=1800,
            description="Batch work under cost and resource controls (best effort)",
        ),
    }
)


class JobType(str, Enum):
    """Closed set of background job types."""

    # DEFAULT
    RSS_FEED_REFRESH = "RSS_FEED_REFRESH"
    WEATHER_REFRESH = "WEATHER_REFRESH"
    LISTING_EXPIRATION = "LISTING_EXPIRATION"
    LISTING_REMINDER = "LISTING_REMINDER"
    PROMOTION_EXPIRATION = "PROMOTION_EXPIRATION"
    RANK_RECALCULATION = "RANK_RECALCULATION"
    INBOUND_EMAIL = "INBOUND_EMAIL"
    ACCOUNT_MERGE_CLEANUP = "ACCOUNT_MERGE_CLEANUP"
    OAUTH_TOKEN_REFRESH = "OAUTH_TOKEN_REFRESH"

    # HIGH
    STOCK_REFRESH = "STOCK_REFRESH"
    MESSAGE_RELAY = "MESSAGE_RELAY"
    EMAIL_DELIVERY = "EMAIL_DELIVERY"

    # LOW
    SOCIAL_REFRESH = "SOCIAL_REFRESH"
    LINK_HEALTH_CHECK = "LINK_HEALTH_CHECK"
    SITEMAP_GENERATION = "SITEMAP_GENERATION"
    CLICK_ROLLUP = "CLICK_ROLLUP"
    PROFILE_METADATA_REFRESH = "PROFILE_METADATA_REFRESH"
    GDPR_EXPORT = "GDPR_EXPORT"
    GDPR_DELETION = "GDPR_DELETION"

    # BULK
    AI_TAGGING = "AI_TAGGING"
    AI_CATEGORIZATION = "AI_CATEGORIZATION"
    FRAUD_DETECTION = "FRAUD_DETECTION"
    LISTING_IMAGE_PROCESSING = "LISTING_IMAGE_PROCESSING"
    LISTING_IMAGE_CLEANUP = "LISTING_IMAGE_CLEANUP"
    DIRECTORY_BULK_IMPORT = "DIRECTORY_BULK_IMPORT"

    # SCREENSHOT
    SCREENSHOT_CAPTURE = "SCREENSHOT_CAPTURE"

    @property
    def queue(self) -> JobQueue:
        return _TYPE_ASSIGNMENTS[self][0]

    @property
    def description(self) -> str:
        return _TYPE_ASSIGNMENTS[self][1]


_TYPE_ASSIGNMENTS: MappingProxyType[JobType, tuple[JobQueue, str]] = MappingProxyType(
    {
        JobType.RSS_FEED_REFRESH: (JobQueue.DEFAULT, "Feed refresh (15min-daily)"),
        JobType.WEATHER_REFRESH: (JobQueue.DEFAULT, "Weather refresh (hourly)"),
        JobType.LISTING_EXPIRATION: (JobQueue.DEFAULT, "Listing expiration (daily)"),
        JobType.LISTING_REMINDER: (JobQueue.DEFAULT, "Listing reminder (daily)"),
        JobType.PROMOTION_EXPIRATION: (
            JobQueue.DEFAULT,
            "Promotion expiration (daily)",
        ),
        JobType.RANK_RECALCULATION: (JobQueue.DEFAULT, "Rank recalculation (hourly)"),
        JobType.INBOUND_EMAIL: (JobQueue.DEFAULT, "Inbound email parsing (1 minute)"),
        JobType.ACCOUNT_MERGE_CLEANUP: (
            JobQueue.DEFAULT,
            "Account merge cleanup (daily)",
        ),
        JobType.OAUTH_TOKEN_REFRESH: (JobQueue.DEFAULT, "OAuth token refresh (daily)"),
        JobType.STOCK_REFRESH: (JobQueue.HIGH, "Stock refresh (5 min market hours)"),
        JobType.MESSAGE_RELAY: (JobQueue.HIGH, "Message relay (on-demand)"),
        JobType.EMAIL_DELIVERY: (JobQueue.HIGH, "Transactional email (on-demand)"),
        JobType.SOCIAL_REFRESH: (JobQueue.LOW, "Social refresh (30 min)"),
        JobType.LINK_HEALTH_CHECK: (JobQueue.LOW, "Link health check (weekly)"),
        JobType.SITEMAP_GENERATION: (JobQueue.LOW, "Sitemap generation (daily)"),
        JobType.CLICK_ROLLUP: (JobQueue.LOW, "Click rollup (hourly)"),
        JobType.PROFILE_METADATA_REFRESH: (
            JobQueue.LOW,
            "Profile metadata refresh (daily)",
        ),
        JobType.GDPR_EXPORT: (JobQueue.LOW, "GDPR export (on-demand)"),
        JobType.GDPR_DELETION: (JobQueue.LOW, "GDPR deletion (on-demand)"),
        JobType.AI_TAGGING: (JobQueue.BULK, "AI tagging (on-demand, budget gated)"),
        JobType.AI_CATEGORIZATION: (
            JobQueue.BULK,
            "AI categorization (hourly, budget gated)",
        ),
        JobType.FRAUD_DETECTION: (JobQueue.BULK, "Fraud scan (on-demand, budget gated)"),
        JobType.LISTING_IMAGE_PROCESSING: (
            JobQueue.BULK,
            "Listing image processing (on-demand)",
        ),
        JobType.LISTING_IMAGE_CLEANUP: (
            JobQueue.BULK,
            "Listing image cleanup (on-demand)",
        ),
        JobType.DIRECTORY_BULK_IMPORT: (JobQueue.BULK, "Directory CSV import (on-demand)"),
        JobType.SCREENSHOT_CAPTURE: (
            JobQueue.SCREENSHOT,
            "Screenshot capture (on-demand)",
        ),
    }
)


def queue_of(job_type: JobType | str) -> QueueFamily:
    """Resolve the queue family of a job type; raises ValueError for unknown types."""
    return JobType(job_type).queue.family


def parse_job_type(value: JobType | str) -> JobType:
    """Parse a producer supplied type, raising UnknownJobTypeError when absent."""
    try:
        return JobType(value)
    except ValueError:
        raise UnknownJobTypeError(str(value)) from None


def types_in(queue: JobQueue) -> list[JobType]:
    """All job types assigned to one queue family."""
    return [job_type for job_type in JobType if job_type.queue is queue]
