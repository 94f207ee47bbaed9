"""Database models for Notification Service."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid

from shared.database import Base, JSONType, utcnow


class EmailStatus(str, Enum):
    """Status of staged emails."""
    PENDING = "pending"
    SENDING = "sending"  # claimed by a dispatch pass
    SENT = "sent"
    FAILED = "failed"


class EmailEventType(str, Enum):
    MEMBERSHIP_PURCHASED = "membership.purchased"
    REGISTRATION_COMPLETED = "registration.completed"
    PAYMENT_FAILED = "payment.failed"
    PLAN_PAYMENT_PROCESSED = "payment_plan.payment_processed"


class EmailLog(Base):
    """Staged transactional email, sent by the dispatch pass."""

    __tablename__ = "email_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    email_address = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    subject = Column(String(255), nullable=False)
    template_id = Column(String(100), nullable=True)
    email_data = Column(JSONType, nullable=False, default=dict)
    # One email per outcome; replayed completions reuse the key
    dedupe_key = Column(String(255), nullable=True, unique=True)

    status = Column(String(20), default=EmailStatus.PENDING.value, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_email_logs_status_created", "status", "created_at"),
    )
