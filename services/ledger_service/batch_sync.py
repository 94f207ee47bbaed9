"""Batch sync of staged invoices and payments to the external ledger."""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select, update

from services.payment_service.models import Payment, PaymentStatus
from services.registration_service.models import Member
from shared.batch_processor import BatchProcessor
from shared.config import Settings
from shared.database import utcnow

from .client import (
    ArchivedContactError,
    LedgerClient,
    LedgerError,
    LedgerRateLimited,
    LedgerUnavailable,
    LedgerValidationError,
)
from .contacts import ContactResolver
from .models import (
    LedgerInvoice,
    LedgerInvoiceLineItem,
    LedgerPayment,
    LedgerSyncLog,
    SyncStatus,
)

logger = logging.getLogger(__name__)


class RowOutcome(str, Enum):
    SYNCED = "synced"
    FAILED = "failed"
    SKIPPED = "skipped"  # left pending for the next pass


class SyncCounts(BaseModel):
    synced: int = 0
    failed: int = 0
    skipped: int = 0


class SyncResult(BaseModel):
    """Outcome of one sync pass."""
    invoices: SyncCounts = Field(default_factory=SyncCounts)
    payments: SyncCounts = Field(default_factory=SyncCounts)
    tenant_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


def cents_to_dollars(cents: int) -> float:
    return round(cents / 100, 2)


class BatchSyncEngine:
    """Pushes pending staging rows to the ledger, one pass at a time."""

    def __init__(self, session_factory, ledger_client: LedgerClient, settings: Settings):
        """
        Initialize the sync engine.

        Args:
            session_factory: Async session factory; each synced row gets its own session
            ledger_client: External ledger API client
            settings: Batch sizes, concurrency and delays
        """
        self.session_factory = session_factory
        self.client = ledger_client
        self.settings = settings
        self._current_run: Optional[asyncio.Task] = None
        self._last_run_monotonic: Optional[float] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._current_run is not None and not self._current_run.done()

    def time_until_next_sync(self) -> float:
        """Seconds before a new pass may start without waiting."""
        if self._last_run_monotonic is None:
            return 0.0
        elapsed = time.monotonic() - self._last_run_monotonic
        return max(0.0, self.settings.min_delay_between_syncs - elapsed)

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "time_until_next_sync": self.time_until_next_sync(),
        }

    async def sync_all_pending_records(self) -> SyncResult:
        """
        Run one sync pass, or join the pass already in flight.

        Concurrent callers receive the same result object.
        """
        if self.is_running:
            logger.info("Ledger sync already running, waiting for in-flight pass")
            return await asyncio.shield(self._current_run)

        self._current_run = asyncio.create_task(self._run())
        return await asyncio.shield(self._current_run)

    async def _run(self) -> SyncResult:
        try:
            wait = self.time_until_next_sync()
            if wait > 0:
                logger.info(f"Delaying ledger sync {wait:.2f}s to respect rate limits")
                await asyncio.sleep(wait)
            return await self._sync_pass()
        finally:
            self._last_run_monotonic = time.monotonic()
            self.last_run_at = utcnow()
            self._current_run = None

    async def _sync_pass(self) -> SyncResult:
        result = SyncResult()

        await self._recover_stale_claims()
        invoice_ids, payment_ids = await self._claim_pending()

        if not invoice_ids and not payment_ids:
            logger.info("No pending ledger records, skipping sync")
            result.skipped_reason = "no_pending_records"
            result.finished_at = utcnow()
            return result

        tenant_id = await self._active_tenant()
        if not tenant_id:
            await self._release_claims(invoice_ids, payment_ids)
            logger.warning(
                f"No active ledger connection; left {len(invoice_ids)} invoices and "
                f"{len(payment_ids)} payments pending"
            )
            result.skipped_reason = "no_active_connection"
            result.finished_at = utcnow()
            return result

        result.tenant_id = tenant_id
        contacts = ContactResolver(self.session_factory, self.client, tenant_id)

        logger.info(
            f"Syncing {len(invoice_ids)} invoices and {len(payment_ids)} payments to tenant {tenant_id}"
        )

        invoice_processor = BatchProcessor(
            batch_size=self.settings.invoice_batch_size,
            concurrency=self.settings.invoice_concurrency,
            delay_between_batches=self.settings.invoice_batch_delay,
        )
        invoice_outcomes = await invoice_processor.process(
            invoice_ids, lambda invoice_id: self._sync_invoice(invoice_id, tenant_id, contacts)
        )
        result.invoices = self._count(invoice_outcomes)

        payment_processor = BatchProcessor(
            batch_size=self.settings.payment_batch_size,
            concurrency=self.settings.payment_concurrency,
            delay_between_batches=self.settings.payment_batch_delay,
        )
        payment_outcomes = await payment_processor.process(
            payment_ids, lambda payment_id: self._sync_payment(payment_id, tenant_id)
        )
        result.payments = self._count(payment_outcomes)

        # Anything an unexpected error left claimed goes back to pending
        await self._release_claims(invoice_ids, payment_ids)

        result.finished_at = utcnow()
        logger.info(
            f"Ledger sync finished: invoices {result.invoices.model_dump()}, "
            f"payments {result.payments.model_dump()}"
        )
        return result

    async def _recover_stale_claims(self):
        """Return rows stuck in processing by a crashed pass to pending."""
        cutoff = utcnow() - timedelta(seconds=self.settings.stale_claim_seconds)
        async with self.session_factory() as session:
            recovered = 0
            for model in (LedgerInvoice, LedgerPayment):
                outcome = await session.execute(
                    update(model)
                    .where(
                        model.sync_status == SyncStatus.PROCESSING.value,
                        model.updated_at < cutoff,
                    )
                    .values(sync_status=SyncStatus.PENDING.value)
                )
                recovered += outcome.rowcount
            await session.commit()

        if recovered:
            logger.warning(f"Recovered {recovered} stale ledger sync claims")

    async def _claim_pending(self) -> tuple[list[UUID], list[UUID]]:
        """Lock pending rows and mark them processing so no other pass takes them."""
        async with self.session_factory() as session:
            invoices = await session.execute(
                select(LedgerInvoice)
                .where(LedgerInvoice.sync_status == SyncStatus.PENDING.value)
                .order_by(LedgerInvoice.staged_at)
                .limit(self.settings.sync_claim_limit)
                .with_for_update(skip_locked=True)
            )
            invoice_rows = invoices.scalars().all()

            payments = await session.execute(
                select(LedgerPayment)
                .where(LedgerPayment.sync_status == SyncStatus.PENDING.value)
                .order_by(LedgerPayment.staged_at)
                .limit(self.settings.sync_claim_limit)
                .with_for_update(skip_locked=True)
            )
            payment_rows = payments.scalars().all()

            for row in (*invoice_rows, *payment_rows):
                row.sync_status = SyncStatus.PROCESSING.value

            invoice_ids = [row.id for row in invoice_rows]
            payment_ids = [row.id for row in payment_rows]
            await session.commit()

        return invoice_ids, payment_ids

    async def _release_claims(self, invoice_ids: list[UUID], payment_ids: list[UUID]):
        async with self.session_factory() as session:
            for model, ids in ((LedgerInvoice, invoice_ids), (LedgerPayment, payment_ids)):
                if not ids:
                    continue
                await session.execute(
                    update(model)
                    .where(
                        model.id.in_(ids),
                        model.sync_status == SyncStatus.PROCESSING.value,
                    )
                    .values(sync_status=SyncStatus.PENDING.value)
                )
            await session.commit()

    async def _active_tenant(self) -> Optional[str]:
        """Pick the first connected tenant that validates."""
        try:
            tenants = await self.client.list_connections()
        except LedgerError as e:
            logger.warning(f"Could not list ledger connections: {e.message}")
            return None

        pinned = self.settings.ledger_tenant_id
        for tenant in tenants:
            if pinned and tenant.tenant_id != pinned:
                continue
            if await self.client.validate_connection(tenant.tenant_id):
                return tenant.tenant_id
        return None

    async def _sync_invoice(
        self, invoice_id: UUID, tenant_id: str, contacts: ContactResolver
    ) -> RowOutcome:
        async with self.session_factory() as session:
            invoice = await session.get(LedgerInvoice, invoice_id)
            if not invoice or invoice.sync_status != SyncStatus.PROCESSING.value:
                return RowOutcome.SKIPPED

            request_data: Optional[Dict[str, Any]] = None
            try:
                if invoice.net_amount > 0 and not await self._payment_completed(session, invoice):
                    invoice.sync_status = SyncStatus.PENDING.value
                    await session.commit()
                    logger.warning(
                        f"Invoice {invoice_id} has no completed payment yet; left pending"
                    )
                    return RowOutcome.SKIPPED

                member = await session.get(Member, invoice.user_id)
                if not member:
                    raise LedgerValidationError(f"Member {invoice.user_id} not found")

                line_items = await session.execute(
                    select(LedgerInvoiceLineItem)
                    .where(LedgerInvoiceLineItem.invoice_id == invoice.id)
                    .order_by(LedgerInvoiceLineItem.created_at)
                )

                contact_id = await contacts.resolve(member)
                request_data = self._invoice_body(invoice, line_items.scalars().all(), contact_id)

                try:
                    created = await self.client.create_invoice(tenant_id, request_data)
                except ArchivedContactError:
                    contact_id = await contacts.recover_archived(member)
                    request_data["contact"] = {"contactID": contact_id}
                    created = await self.client.create_invoice(tenant_id, request_data)

                invoice.external_invoice_id = created.invoice_id
                invoice.invoice_number = created.invoice_number
                invoice.tenant_id = tenant_id
                invoice.sync_status = SyncStatus.SYNCED.value
                invoice.sync_error = None
                invoice.last_synced_at = utcnow()
                session.add(
                    LedgerSyncLog(
                        tenant_id=tenant_id,
                        operation="create_invoice",
                        record_type="invoice",
                        record_id=invoice_id,
                        external_id=created.invoice_id,
                        success=True,
                        request_data=request_data,
                        response_data=created.model_dump(),
                    )
                )
                await session.commit()

                logger.info(f"Synced invoice {invoice_id} as {created.invoice_number}")
                return RowOutcome.SYNCED

            except (LedgerRateLimited, LedgerUnavailable) as e:
                await session.rollback()
                await self._leave_pending(session, LedgerInvoice, invoice_id, e)
                return RowOutcome.SKIPPED

            except LedgerValidationError as e:
                await session.rollback()
                await self._mark_failed(
                    session, LedgerInvoice, invoice_id, tenant_id, "create_invoice", "invoice", e, request_data
                )
                return RowOutcome.FAILED

            except Exception as e:
                logger.error(f"Unexpected error syncing invoice {invoice_id}: {str(e)}", exc_info=True)
                await session.rollback()
                await self._leave_pending(session, LedgerInvoice, invoice_id, e)
                return RowOutcome.SKIPPED

    async def _sync_payment(self, ledger_payment_id: UUID, tenant_id: str) -> RowOutcome:
        async with self.session_factory() as session:
            ledger_payment = await session.get(LedgerPayment, ledger_payment_id)
            if not ledger_payment or ledger_payment.sync_status != SyncStatus.PROCESSING.value:
                return RowOutcome.SKIPPED

            invoice = await session.get(LedgerInvoice, ledger_payment.invoice_id)
            if (
                not invoice
                or invoice.sync_status != SyncStatus.SYNCED.value
                or not invoice.external_invoice_id
            ):
                ledger_payment.sync_status = SyncStatus.PENDING.value
                await session.commit()
                logger.info(f"Payment {ledger_payment_id} waiting for its invoice to sync")
                return RowOutcome.SKIPPED

            invoice_tenant = invoice.tenant_id or tenant_id
            request_data: Optional[Dict[str, Any]] = None
            try:
                external_invoice = await self.client.get_invoice(
                    invoice_tenant, invoice.external_invoice_id
                )

                if external_invoice.amount_due <= 0:
                    ledger_payment.sync_status = SyncStatus.SYNCED.value
                    ledger_payment.sync_error = None
                    ledger_payment.tenant_id = invoice_tenant
                    ledger_payment.last_synced_at = utcnow()
                    session.add(
                        LedgerSyncLog(
                            tenant_id=invoice_tenant,
                            operation="payment_already_applied",
                            record_type="payment",
                            record_id=ledger_payment_id,
                            external_id=invoice.external_invoice_id,
                            success=True,
                            response_data=external_invoice.model_dump(),
                        )
                    )
                    await session.commit()
                    logger.info(
                        f"Invoice {invoice.external_invoice_id} already paid; "
                        f"marked payment {ledger_payment_id} synced"
                    )
                    return RowOutcome.SYNCED

                reference = (
                    ledger_payment.reference
                    or (ledger_payment.staging_metadata or {}).get("charge_id")
                    or invoice.invoice_number
                )
                request_data = {
                    "invoice": {"invoiceID": invoice.external_invoice_id},
                    "account": {"code": ledger_payment.bank_account_code},
                    "date": utcnow().date().isoformat(),
                    "amount": min(cents_to_dollars(ledger_payment.amount_paid), external_invoice.amount_due),
                    "reference": reference,
                }
                external_payment_id = await self.client.create_payment(invoice_tenant, request_data)

                ledger_payment.external_payment_id = external_payment_id
                ledger_payment.reference = reference
                ledger_payment.tenant_id = invoice_tenant
                ledger_payment.sync_status = SyncStatus.SYNCED.value
                ledger_payment.sync_error = None
                ledger_payment.last_synced_at = utcnow()
                session.add(
                    LedgerSyncLog(
                        tenant_id=invoice_tenant,
                        operation="create_payment",
                        record_type="payment",
                        record_id=ledger_payment_id,
                        external_id=external_payment_id,
                        success=True,
                        request_data=request_data,
                    )
                )
                await session.commit()

                logger.info(f"Synced payment {ledger_payment_id} as {external_payment_id}")
                return RowOutcome.SYNCED

            except (LedgerRateLimited, LedgerUnavailable) as e:
                await session.rollback()
                await self._leave_pending(session, LedgerPayment, ledger_payment_id, e)
                return RowOutcome.SKIPPED

            except LedgerValidationError as e:
                await session.rollback()
                await self._mark_failed(
                    session, LedgerPayment, ledger_payment_id, invoice_tenant, "create_payment", "payment", e, request_data
                )
                return RowOutcome.FAILED

            except Exception as e:
                logger.error(f"Unexpected error syncing payment {ledger_payment_id}: {str(e)}", exc_info=True)
                await session.rollback()
                await self._leave_pending(session, LedgerPayment, ledger_payment_id, e)
                return RowOutcome.SKIPPED

    async def _payment_completed(self, session, invoice: LedgerInvoice) -> bool:
        if not invoice.payment_id:
            return False
        payment = await session.get(Payment, invoice.payment_id)
        return payment is not None and payment.status == PaymentStatus.COMPLETED.value

    def _invoice_body(
        self,
        invoice: LedgerInvoice,
        line_items: list[LedgerInvoiceLineItem],
        contact_id: str,
    ) -> Dict[str, Any]:
        invoice_date = invoice.staged_at.date()
        metadata = invoice.staging_metadata or {}
        return {
            "type": invoice.invoice_type,
            "contact": {"contactID": contact_id},
            "date": invoice_date.isoformat(),
            "dueDate": (invoice_date + timedelta(days=self.settings.invoice_due_days)).isoformat(),
            "status": "AUTHORISED",
            "currencyCode": self.settings.currency,
            "reference": metadata.get("charge_id") or str(invoice.id),
            "lineItems": [
                {
                    "description": item.description,
                    "quantity": item.quantity,
                    "unitAmount": cents_to_dollars(item.unit_amount),
                    "accountCode": item.account_code or self.settings.ledger_default_account_code,
                    "taxType": item.tax_type,
                }
                for item in line_items
            ],
        }

    async def _leave_pending(self, session, model, row_id: UUID, error: Exception):
        if isinstance(error, LedgerRateLimited):
            logger.warning(f"Ledger rate limit hit for {model.__tablename__} {row_id}; left pending")
        else:
            logger.warning(f"Transient ledger error for {model.__tablename__} {row_id}: {error}; left pending")

        await session.execute(
            update(model)
            .where(model.id == row_id)
            .values(sync_status=SyncStatus.PENDING.value, sync_error=str(error))
        )
        await session.commit()

    async def _mark_failed(
        self,
        session,
        model,
        row_id: UUID,
        tenant_id: Optional[str],
        operation: str,
        record_type: str,
        error: LedgerError,
        request_data: Optional[Dict[str, Any]],
    ):
        logger.error(f"Ledger rejected {record_type} {row_id}: {error.message}")

        await session.execute(
            update(model)
            .where(model.id == row_id)
            .values(sync_status=SyncStatus.FAILED.value, sync_error=error.message)
        )
        session.add(
            LedgerSyncLog(
                tenant_id=tenant_id,
                operation=operation,
                record_type=record_type,
                record_id=row_id,
                success=False,
                error_message=error.message,
                request_data=request_data,
                response_data=error.response_data,
            )
        )
        await session.commit()

    @staticmethod
    def _count(outcomes: list[Any]) -> SyncCounts:
        counts = SyncCounts()
        for outcome in outcomes:
            if outcome == RowOutcome.SYNCED:
                counts.synced += 1
            elif outcome == RowOutcome.SKIPPED:
                counts.skipped += 1
            else:
                counts.failed += 1
        return counts


class SyncScheduler:
    """Runs sync passes on a fixed interval inside the service process."""

    def __init__(self, engine: BatchSyncEngine, interval: int):
        self.engine = engine
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._running:
            logger.warning("Sync scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Sync scheduler started (every {self.interval}s)")

    async def stop(self):
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Sync scheduler stopped")

    async def _loop(self):
        while self._running:
            try:
                await self.engine.sync_all_pending_records()
            except Exception as e:
                logger.error(f"Error in ledger sync scheduler: {str(e)}", exc_info=True)

            await asyncio.sleep(self.interval)
