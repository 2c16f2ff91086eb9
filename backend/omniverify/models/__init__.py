from .batch import (
    Batch,
    BatchStatus,
    QueueItem,
    QueueItemStatus,
    PROVIDER_BATCH_STATUSES,
    TERMINAL_BATCH_STATUSES,
)
from .contact import Contact, VerificationResult
from .tracking import RateLimitRecord, DeadLetterEntry, HealthMetric

__all__ = [
    "Batch",
    "BatchStatus",
    "QueueItem",
    "QueueItemStatus",
    "PROVIDER_BATCH_STATUSES",
    "TERMINAL_BATCH_STATUSES",
    "Contact",
    "VerificationResult",
    "RateLimitRecord",
    "DeadLetterEntry",
    "HealthMetric",
]
