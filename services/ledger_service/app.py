"""Ledger Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.auth import require_cron_token
from shared.config import Settings
from shared.database import Database
from shared.exceptions import StagingCreationFailed
from shared.purchases import StagingPayload

from .batch_sync import BatchSyncEngine, SyncResult, SyncScheduler
from .client import LedgerClient
from .models import LedgerInvoice, LedgerPayment, LedgerSyncLog, SyncStatus
from .staging import StagingManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="ledger-service",
    service_port=8004,
)

database = Database(settings.database_url)
cron_auth = require_cron_token(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    logging.getLogger().setLevel(settings.log_level)

    # Startup
    logger.info("Starting Ledger Service...")
    await database.create_tables()

    ledger_client = LedgerClient(settings.ledger_api_url, settings.ledger_access_token)
    app.state.sync_engine = BatchSyncEngine(database.session_factory, ledger_client, settings)

    scheduler = None
    if settings.sync_interval_seconds > 0:
        scheduler = SyncScheduler(app.state.sync_engine, settings.sync_interval_seconds)
        await scheduler.start()

    logger.info("Ledger Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Ledger Service...")
    if scheduler:
        await scheduler.stop()
    await ledger_client.close()
    await database.close()


app = FastAPI(title="Ledger Service", lifespan=lifespan)


async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


def get_sync_engine(request: Request) -> BatchSyncEngine:
    return request.app.state.sync_engine


# Request/Response models
class LineItemResponse(BaseModel):
    id: UUID
    line_item_type: str
    item_id: Optional[UUID] = None
    discount_code_id: Optional[UUID] = None
    description: str
    quantity: int
    unit_amount: int
    line_amount: int
    account_code: Optional[str] = None

    class Config:
        from_attributes = True


class LedgerPaymentResponse(BaseModel):
    id: UUID
    payment_id: Optional[UUID] = None
    amount_paid: int
    reference: Optional[str] = None
    installment_number: Optional[int] = None
    sync_status: str
    sync_error: Optional[str] = None
    external_payment_id: Optional[str] = None

    class Config:
        from_attributes = True


class StagingRecordResponse(BaseModel):
    """Staged invoice with its line items and payment rows."""
    id: UUID
    user_id: UUID
    payment_id: Optional[UUID] = None
    invoice_status: str
    total_amount: int
    discount_amount: int
    net_amount: int
    sync_status: str
    sync_error: Optional[str] = None
    external_invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    staging_metadata: Dict[str, Any]
    staged_at: datetime
    last_synced_at: Optional[datetime] = None
    line_items: list[LineItemResponse]
    payments: list[LedgerPaymentResponse]


class PaidPurchaseStagingRequest(BaseModel):
    """Repair request for a completed payment with no staging record."""
    payload: StagingPayload
    payment_id: UUID
    charge_id: Optional[str] = None


class SyncLogResponse(BaseModel):
    id: UUID
    tenant_id: Optional[str] = None
    operation: str
    record_type: str
    record_id: Optional[UUID] = None
    external_id: Optional[str] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# API Endpoints
@app.post("/sync", response_model=SyncResult, dependencies=[Depends(cron_auth)])
async def trigger_sync(engine: BatchSyncEngine = Depends(get_sync_engine)):
    """Run a sync pass, or join the one in flight."""
    return await engine.sync_all_pending_records()


@app.get("/sync/status")
async def sync_status(
    engine: BatchSyncEngine = Depends(get_sync_engine),
    session: AsyncSession = Depends(get_session),
):
    """Engine state plus row counts per sync status."""
    counts = {}
    for name, model in (("invoices", LedgerInvoice), ("payments", LedgerPayment)):
        result = await session.execute(
            select(model.sync_status, func.count()).group_by(model.sync_status)
        )
        counts[name] = {status: count for status, count in result.all()}

    return {**engine.get_sync_status(), "counts": counts}


@app.get("/sync/logs", response_model=list[SyncLogResponse])
async def sync_logs(
    limit: int = Query(default=50, ge=1, le=500),
    failed_only: bool = False,
    session: AsyncSession = Depends(get_session),
):
    """Most recent sync log entries."""
    query = select(LedgerSyncLog).order_by(LedgerSyncLog.created_at.desc()).limit(limit)
    if failed_only:
        query = query.where(LedgerSyncLog.success.is_(False))

    result = await session.execute(query)
    return [SyncLogResponse.model_validate(log) for log in result.scalars().all()]


@app.get("/staging/{staging_record_id}", response_model=StagingRecordResponse)
async def get_staging_record(staging_record_id: UUID, session: AsyncSession = Depends(get_session)):
    """Get a staging record by ID."""
    record = await StagingManager(session).get_staging_record(staging_record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Staging record not found")

    invoice = record.invoice
    return StagingRecordResponse(
        id=invoice.id,
        user_id=invoice.user_id,
        payment_id=invoice.payment_id,
        invoice_status=invoice.invoice_status,
        total_amount=invoice.total_amount,
        discount_amount=invoice.discount_amount,
        net_amount=invoice.net_amount,
        sync_status=invoice.sync_status,
        sync_error=invoice.sync_error,
        external_invoice_id=invoice.external_invoice_id,
        invoice_number=invoice.invoice_number,
        staging_metadata=invoice.staging_metadata or {},
        staged_at=invoice.staged_at,
        last_synced_at=invoice.last_synced_at,
        line_items=[LineItemResponse.model_validate(item) for item in record.line_items],
        payments=[LedgerPaymentResponse.model_validate(payment) for payment in record.payments],
    )


@app.post(
    "/staging/paid-purchases",
    status_code=201,
    dependencies=[Depends(cron_auth)],
)
async def stage_paid_purchase(
    request: PaidPurchaseStagingRequest,
    session: AsyncSession = Depends(get_session),
):
    """Stage a purchase that was charged without a staging record."""
    staging_manager = StagingManager(
        session,
        bank_account_code=settings.ledger_bank_account_code,
        default_account_code=settings.ledger_default_account_code,
    )
    staging_record_id = await staging_manager.create_paid_purchase_staging(
        request.payload, request.payment_id, request.charge_id
    )
    if staging_record_id is None:
        raise StagingCreationFailed(request.payload.user_id)

    logger.info(
        f"Operator staged record {staging_record_id} for completed payment {request.payment_id}"
    )
    return {"staging_record_id": str(staging_record_id)}

@app.post("/staging/{staging_record_id}/retry", dependencies=[Depends(cron_auth)])
async def retry_staging_record(staging_record_id: UUID, session: AsyncSession = Depends(get_session)):
    """Move a failed staging record and its failed payments back to pending."""
    record = await StagingManager(session).get_staging_record(staging_record_id, for_update=True)
    if not record:
        raise HTTPException(status_code=404, detail="Staging record not found")

    retried = 0
    for row in (record.invoice, *record.payments):
        if row.sync_status == SyncStatus.FAILED.value:
            row.sync_status = SyncStatus.PENDING.value
            row.sync_error = None
            retried += 1
    await session.commit()

    logger.info(f"Requeued {retried} failed rows of staging record {staging_record_id}")
    return {"staging_record_id": str(staging_record_id), "requeued": retried}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "ledger-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
