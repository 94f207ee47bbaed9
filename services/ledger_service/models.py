"""Database models for Ledger Service (the staging store)."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)

from shared.database import Base, JSONType, utcnow


class SyncStatus(str, Enum):
    """Where a staged row is on its way to the external ledger."""
    STAGED = "staged"
    PENDING = "pending"
    PROCESSING = "processing"  # claimed by a running sync pass
    SYNCED = "synced"
    FAILED = "failed"
    NEEDS_UPDATE = "needs_update"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    AUTHORISED = "AUTHORISED"


class LineItemType(str, Enum):
    MEMBERSHIP = "membership"
    REGISTRATION = "registration"
    DISCOUNT = "discount"
    DONATION = "donation"


class LedgerInvoice(Base):
    """Staged invoice, the primary staging record."""

    __tablename__ = "ledger_invoices"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    payment_id = Column(Uuid, nullable=True, index=True)

    invoice_type = Column(String(10), default="ACCREC", nullable=False)
    invoice_status = Column(String(20), default=InvoiceStatus.DRAFT.value, nullable=False)

    total_amount = Column(Integer, nullable=False)  # cents
    discount_amount = Column(Integer, nullable=False, default=0)
    net_amount = Column(Integer, nullable=False)

    sync_status = Column(String(20), default=SyncStatus.STAGED.value, nullable=False)
    sync_error = Column(Text, nullable=True)

    external_invoice_id = Column(String(255), nullable=True)
    invoice_number = Column(String(100), nullable=True)
    tenant_id = Column(String(255), nullable=True)

    staging_metadata = Column(JSONType, nullable=False, default=dict)

    staged_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_ledger_invoices_sync_status_staged", "sync_status", "staged_at"),
    )


class LedgerInvoiceLineItem(Base):
    """Line item of a staged invoice."""

    __tablename__ = "ledger_invoice_line_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    invoice_id = Column(Uuid, nullable=False, index=True)

    line_item_type = Column(String(20), nullable=False)
    item_id = Column(Uuid, nullable=True)
    discount_code_id = Column(Uuid, nullable=True)

    description = Column(Text, nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    unit_amount = Column(Integer, nullable=False)  # cents, negative for discounts
    line_amount = Column(Integer, nullable=False)
    account_code = Column(String(50), nullable=True)
    tax_type = Column(String(20), default="NONE", nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class LedgerPayment(Base):
    """Staged ledger payment: a payment shell or one plan installment."""

    __tablename__ = "ledger_payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    invoice_id = Column(Uuid, nullable=False, index=True)
    payment_id = Column(Uuid, nullable=True)

    bank_account_code = Column(String(50), nullable=False)
    amount_paid = Column(Integer, nullable=False)  # cents
    payment_method = Column(String(20), default="stripe", nullable=False)
    reference = Column(String(255), nullable=True)

    installment_number = Column(Integer, nullable=True)
    scheduled_date = Column(Date, nullable=True)
    attempt_count = Column(Integer, default=0, nullable=False)  # installment charge attempts
    last_attempt_at = Column(DateTime, nullable=True)

    sync_status = Column(String(20), default=SyncStatus.STAGED.value, nullable=False)
    sync_error = Column(Text, nullable=True)
    external_payment_id = Column(String(255), nullable=True)
    tenant_id = Column(String(255), nullable=True)

    staging_metadata = Column(JSONType, nullable=False, default=dict)

    staged_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_ledger_payments_sync_status_staged", "sync_status", "staged_at"),
    )


class LedgerContact(Base):
    """Cached mapping from member to external ledger contact."""

    __tablename__ = "ledger_contacts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=False)
    tenant_id = Column(String(255), nullable=False)
    external_contact_id = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    contact_status = Column(String(20), default="ACTIVE", nullable=False)

    last_synced_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_contacts_user_tenant", "user_id", "tenant_id", unique=True),
    )


class LedgerSyncLog(Base):
    """Admin-facing log of external ledger operations."""

    __tablename__ = "ledger_sync_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id = Column(String(255), nullable=True)
    operation = Column(String(50), nullable=False)
    record_type = Column(String(20), nullable=False)
    record_id = Column(Uuid, nullable=False)
    external_id = Column(String(255), nullable=True)
    success = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    request_data = Column(JSONType, nullable=True)
    response_data = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_sync_logs_record", "record_type", "record_id"),
        Index("ix_ledger_sync_logs_created", "created_at"),
    )
