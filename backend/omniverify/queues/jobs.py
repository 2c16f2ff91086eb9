# backend/omniverify/queues/jobs.py
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Dict

from ..config import Settings

# ---------------------------------------------------
# Queue + job names
# ---------------------------------------------------
EMAIL_VERIFICATION = "email-verification"
BATCH_STATUS_CHECK = "batch-status-check"
BATCH_DOWNLOAD = "batch-download"
CLEANUP_TASKS = "cleanup-tasks"

CREATE_BATCH = "create-batch"
RETRY_FAILED_BATCH = "retry-failed-batch"
CHECK_BATCH_STATUS = "check-batch-status"
DOWNLOAD_BATCH_RESULTS = "download-batch-results"
CLEANUP_RATE_LIMITS = "cleanup-rate-limits"
HEALTH_CHECK = "health-check"

JOB_QUEUES = {
    CREATE_BATCH: EMAIL_VERIFICATION,
    RETRY_FAILED_BATCH: EMAIL_VERIFICATION,
    CHECK_BATCH_STATUS: BATCH_STATUS_CHECK,
    DOWNLOAD_BATCH_RESULTS: BATCH_DOWNLOAD,
    CLEANUP_RATE_LIMITS: CLEANUP_TASKS,
    HEALTH_CHECK: CLEANUP_TASKS,
}


class Priority:
    CRITICAL = 100
    HIGH = 75
    NORMAL = 50
    LOW = 25


@dataclass(frozen=True)
class QueueSpec:
    name: str
    concurrency: int
    rate_per_minute: int


def queue_specs(settings: Settings) -> Dict[str, QueueSpec]:
    return {
        EMAIL_VERIFICATION: QueueSpec(
            EMAIL_VERIFICATION, settings.VERIFICATION_CONCURRENCY, settings.VERIFICATION_RATE_PER_MIN
        ),
        BATCH_STATUS_CHECK: QueueSpec(
            BATCH_STATUS_CHECK, settings.STATUS_CHECK_CONCURRENCY, settings.STATUS_CHECK_RATE_PER_MIN
        ),
        BATCH_DOWNLOAD: QueueSpec(
            BATCH_DOWNLOAD, settings.DOWNLOAD_CONCURRENCY, settings.DOWNLOAD_RATE_PER_MIN
        ),
        CLEANUP_TASKS: QueueSpec(
            CLEANUP_TASKS, settings.CLEANUP_CONCURRENCY, settings.CLEANUP_RATE_PER_MIN
        ),
    }


@dataclass
class Job:
    id: str
    queue: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: int = Priority.NORMAL
    enqueued_ms: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw) -> "Job":
        return cls(**json.loads(raw))
