"""Database models for Registration Service."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)

from shared.database import Base, utcnow


class ReservationStatus(str, Enum):
    """Reservation status."""
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# Statuses that hold a seat while the charge is in flight
ACTIVE_RESERVATION_STATUSES = (
    ReservationStatus.AWAITING_PAYMENT.value,
    ReservationStatus.PROCESSING.value,
)

_ACTIVE_RESERVATION_CLAUSE = text("status IN ('awaiting_payment', 'processing')")


class Member(Base):
    """Club member."""

    __tablename__ = "members"

    id = Column(Uuid, primary_key=True, default=uuid4)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    member_number = Column(String(50), nullable=True, unique=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Membership(Base):
    """Membership product sold by the month."""

    __tablename__ = "memberships"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    price_monthly = Column(Integer, nullable=False)  # cents
    accounting_code = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class RegistrationCategory(Base):
    """Priced, optionally capacity-limited category of a registration."""

    __tablename__ = "registration_categories"

    id = Column(Uuid, primary_key=True, default=uuid4)
    registration_id = Column(Uuid, nullable=False, index=True)
    registration_name = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    season_name = Column(String(100), nullable=True)
    price = Column(Integer, nullable=False)  # cents
    max_capacity = Column(Integer, nullable=True)  # None means unlimited
    accounting_code = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class Reservation(Base):
    """Time-boxed hold on a registration category seat."""

    __tablename__ = "reservations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    registration_id = Column(Uuid, nullable=False)
    category_id = Column(Uuid, nullable=False)

    status = Column(
        String(20), default=ReservationStatus.AWAITING_PAYMENT.value, nullable=False
    )
    expires_at = Column(DateTime, nullable=True)
    external_charge_id = Column(String(255), nullable=True)
    payment_id = Column(Uuid, nullable=True)
    amount = Column(Integer, nullable=False, default=0)  # cents

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # One live hold per member and category
        Index(
            "uq_reservations_active_user_category",
            "user_id",
            "category_id",
            unique=True,
            postgresql_where=_ACTIVE_RESERVATION_CLAUSE,
            sqlite_where=_ACTIVE_RESERVATION_CLAUSE,
        ),
        Index("ix_reservations_category_status", "category_id", "status"),
    )


class DiscountCode(Base):
    """Percentage discount code."""

    __tablename__ = "discount_codes"

    id = Column(Uuid, primary_key=True, default=uuid4)
    code = Column(String(50), nullable=False, unique=True)
    percentage = Column(Integer, nullable=False)
    accounting_code = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class DiscountUsage(Base):
    """One use of a discount code by a member for one item."""

    __tablename__ = "discount_usage"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    discount_code_id = Column(Uuid, nullable=False, index=True)
    item_id = Column(Uuid, nullable=False)  # registration or membership
    item_type = Column(String(20), nullable=False)
    payment_id = Column(Uuid, nullable=True)
    amount_saved = Column(Integer, nullable=False)  # cents
    notes = Column(Text, nullable=True)

    used_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "discount_code_id", "item_id", name="uq_discount_usage_user_code_item"
        ),
    )
