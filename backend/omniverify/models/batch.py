import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Text, Index
from omniverify.db import Base, utcnow


class BatchStatus(str, enum.Enum):
    queued = "queued"
    processing = "processing"
    downloading = "downloading"
    completed = "completed"
    failed = "failed"


# batches holding a provider-side slot; queued ones waiting on backoff do not
PROVIDER_BATCH_STATUSES = (BatchStatus.processing, BatchStatus.downloading)
TERMINAL_BATCH_STATUSES = (BatchStatus.completed, BatchStatus.failed)


class QueueItemStatus(str, enum.Enum):
    queued = "queued"
    assigned = "assigned"
    completed = "completed"
    failed = "failed"


def new_batch_id() -> str:
    return uuid.uuid4().hex


class Batch(Base):
    __tablename__ = "batches"

    id = Column(String(32), primary_key=True, default=new_batch_id)
    provider_batch_id = Column(String, nullable=True, unique=True)
    user_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=False, index=True)

    # stored as plain string, validated through models.lifecycle
    status = Column(String(20), nullable=False, default=BatchStatus.queued.value, index=True)

    quantity = Column(Integer, nullable=False, default=0)
    duplicates = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_ts = Column(DateTime, nullable=False, default=utcnow)
    updated_ts = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    submitted_ts = Column(DateTime, nullable=True)
    completed_ts = Column(DateTime, nullable=True)


class QueueItem(Base):
    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_batch_status", "batch_id", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=False, index=True)
    batch_id = Column(String(32), nullable=True)

    status = Column(String(20), nullable=False, default=QueueItemStatus.queued.value)
    priority = Column(Integer, nullable=False, default=50)
    domain_hash = Column(String(32), nullable=True)

    created_ts = Column(DateTime, nullable=False, default=utcnow)
    assigned_ts = Column(DateTime, nullable=True)
    completed_ts = Column(DateTime, nullable=True)
