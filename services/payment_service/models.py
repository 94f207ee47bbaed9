"""Database models for Payment Service."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid

from shared.database import Base, JSONType, utcnow


class PaymentStatus(str, Enum):
    """Payment status."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(Base):
    """Member payment, one per checkout attempt."""

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)

    total_amount = Column(Integer, nullable=False)  # cents
    discount_amount = Column(Integer, nullable=False, default=0)
    final_amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)

    # Gateway charge id doubles as the webhook idempotency key
    gateway_charge_id = Column(String(255), nullable=True, unique=True)
    staging_record_id = Column(Uuid, nullable=True)
    reservation_id = Column(Uuid, nullable=True)
    purchase_type = Column(String(20), nullable=False)

    gateway_response = Column(JSONType, nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
    )
