from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, Text, JSON
from omniverify.db import Base, utcnow


class RateLimitRecord(Base):
    """One provider call; counted while window_start is inside the window."""
    __tablename__ = "rate_limit_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    window_start = Column(DateTime, nullable=False, index=True)
    window_end = Column(DateTime, nullable=False, index=True)


class DeadLetterEntry(Base):
    __tablename__ = "dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(32), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=False)

    error_message = Column(Text, nullable=False)
    error_kind = Column(String(32), nullable=True)
    priority = Column(String(10), nullable=False, default="medium")
    requires_manual_review = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)

    failed_ts = Column(DateTime, nullable=False, default=utcnow, index=True)
    reviewed = Column(Boolean, nullable=False, default=False, index=True)
    reviewed_ts = Column(DateTime, nullable=True)


class HealthMetric(Base):
    __tablename__ = "health_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric_name = Column(String(100), nullable=False, index=True)
    metric_value = Column(Float, nullable=False)
    recorded_ts = Column(DateTime, nullable=False, default=utcnow, index=True)
