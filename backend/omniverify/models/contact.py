from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, JSON
from omniverify.db import Base, utcnow


class Contact(Base):
    """Global email record; caches the latest authoritative result."""
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True, index=True)
    domain = Column(String, nullable=True, index=True)

    latest_status = Column(String(32), nullable=True)
    latest_reason = Column(String, nullable=True)
    latest_score = Column(Integer, nullable=True)
    latest_batch_id = Column(String(32), nullable=True)
    verified_ts = Column(DateTime, nullable=True)

    created_ts = Column(DateTime, nullable=False, default=utcnow)


class VerificationResult(Base):
    __tablename__ = "verification_results"

    batch_id = Column(String(32), primary_key=True)
    contact_id = Column(Integer, primary_key=True, index=True)

    status = Column(String(32), nullable=True)
    reason = Column(String, nullable=True)
    score = Column(Integer, nullable=True)
    toxic = Column(Boolean, nullable=True)
    toxicity = Column(Float, nullable=True)
    provider = Column(String, nullable=True)

    domain_info = Column(JSON, default=dict)
    account_info = Column(JSON, default=dict)
    dns_info = Column(JSON, default=dict)

    processed_ts = Column(DateTime, nullable=False, default=utcnow)
