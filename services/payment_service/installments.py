"""Scheduled charging of payment plan installments after the first."""
import logging
from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import select, update

from services.ledger_service.models import InvoiceStatus, LedgerInvoice, LedgerPayment, SyncStatus
from services.ledger_service.staging import merge_metadata
from shared.database import utcnow

from .checkout import CheckoutService
from .gateway import SUCCEEDED, TERMINAL_FAILURE_STATUSES
from .models import Payment, PaymentStatus

logger = logging.getLogger(__name__)


class InstallmentRunResult(BaseModel):
    """Counts from one due-installment pass."""
    found: int = 0
    charged: int = 0
    awaiting_confirmation: int = 0
    failed: int = 0
    retries: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class InstallmentCharger:
    """
    Charges staged installments whose scheduled date has arrived.

    Each installment is charged off-session against the payment method saved
    with the first installment. A declined installment stays staged and is
    retried once the retry interval has passed, up to the attempt limit.
    """

    def __init__(self, checkout: CheckoutService, max_attempts: int = 3, retry_hours: int = 24):
        self.checkout = checkout
        self.session = checkout.session
        self.gateway = checkout.gateway
        self.max_attempts = max_attempts
        self.retry_interval = timedelta(hours=retry_hours)

    async def process_due_installments(self, today: Optional[date] = None) -> InstallmentRunResult:
        """Charge every eligible installment due on or before today."""
        today = today or utcnow().date()
        results = InstallmentRunResult()

        query = (
            select(LedgerPayment.id)
            .join(LedgerInvoice, LedgerInvoice.id == LedgerPayment.invoice_id)
            .where(
                LedgerPayment.installment_number > 1,
                LedgerPayment.sync_status == SyncStatus.STAGED.value,
                LedgerPayment.scheduled_date <= today,
                LedgerInvoice.invoice_status == InvoiceStatus.AUTHORISED.value,
            )
            .order_by(LedgerPayment.scheduled_date, LedgerPayment.installment_number)
        )
        due_ids = list((await self.session.execute(query)).scalars().all())
        results.found = len(due_ids)

        if not due_ids:
            logger.info(f"No installments due on {today.isoformat()}")
            return results

        logger.info(f"Found {len(due_ids)} installments due on {today.isoformat()}")

        for installment_id in due_ids:
            outcome = await self._process_installment(installment_id, results)
            if outcome:
                setattr(results, outcome, getattr(results, outcome) + 1)

        logger.info(
            f"Installment pass complete: {results.charged} charged, "
            f"{results.awaiting_confirmation} awaiting confirmation, {results.failed} failed, "
            f"{results.skipped} skipped"
        )
        return results

    async def _process_installment(
        self, installment_id: UUID, results: InstallmentRunResult
    ) -> Optional[str]:
        installment = await self.session.get(LedgerPayment, installment_id)
        invoice = await self.session.get(LedgerInvoice, installment.invoice_id)
        invoice_metadata = invoice.staging_metadata or {}

        attempt_count = installment.attempt_count or 0
        if not await self._is_eligible(installment, attempt_count):
            return "skipped"

        payment_method_id = invoice_metadata.get("payment_method_id")
        if not payment_method_id:
            reason = "No saved payment method for off-session charge"
            logger.error(f"Cannot charge installment {installment_id}: {reason}")
            await self._record_attempt(installment_id, attempt_count + 1, error=reason)
            results.errors.append(f"Installment {installment_id}: {reason}")
            return "failed"

        if attempt_count > 0:
            results.retries += 1

        installment_number = installment.installment_number
        amount = installment.amount_paid
        staging_record_id = invoice.id
        user_id = invoice.user_id

        payment = Payment(
            user_id=user_id,
            total_amount=amount,
            discount_amount=0,
            final_amount=amount,
            currency=self.checkout.settings.currency,
            status=PaymentStatus.PENDING.value,
            staging_record_id=staging_record_id,
            purchase_type=invoice_metadata.get("product_type", "registration"),
        )
        self.session.add(payment)
        await self.session.commit()
        await self._record_attempt(installment_id, attempt_count + 1, pending_payment_id=payment.id)

        charge_metadata = {
            "staging_record_id": str(staging_record_id),
            "user_id": str(user_id),
            "payment_id": str(payment.id),
            "product_type": payment.purchase_type,
            "is_payment_plan": "true",
            "installment_number": str(installment_number),
        }
        logger.info(
            f"Charging installment {installment_number} of staging record {staging_record_id} "
            f"(attempt {attempt_count + 1}, {amount} cents)"
        )

        try:
            charge = await self.gateway.create_charge(
                amount,
                charge_metadata,
                idempotency_key=f"installment-{installment_id}-{attempt_count + 1}",
                customer_id=invoice_metadata.get("gateway_customer_id"),
                payment_method_id=payment_method_id,
            )
        except Exception as e:
            reason = getattr(e, "user_message", None) or str(e)
            logger.warning(f"Installment {installment_id} charge declined: {reason}")
            await self.checkout.fail_charge(payment, {"last_payment_error": {"message": reason}})
            await self._record_attempt(installment_id, attempt_count + 1, error=reason)
            results.errors.append(f"Installment {installment_id}: {reason}")
            return "failed"

        payment.gateway_charge_id = charge.id
        await self.session.commit()
        intent = {"id": charge.id, "status": charge.status, "payment_method": payment_method_id}

        if charge.status == SUCCEEDED:
            await self.checkout.complete_charge(payment, intent, charge_metadata)
            return "charged"

        if charge.status in TERMINAL_FAILURE_STATUSES:
            reason = f"Charge {charge.status}"
            await self.checkout.fail_charge(payment, intent)
            await self._record_attempt(installment_id, attempt_count + 1, error=reason)
            results.errors.append(f"Installment {installment_id}: {reason}")
            return "failed"

        # Settles later through the gateway webhook
        return "awaiting_confirmation"

    async def _is_eligible(self, installment: LedgerPayment, attempt_count: int) -> bool:
        if attempt_count >= self.max_attempts:
            return False

        if (
            installment.last_attempt_at is not None
            and utcnow() - installment.last_attempt_at < self.retry_interval
        ):
            return False

        # A charge still in flight is left to its webhook
        pending_payment_id = (installment.staging_metadata or {}).get("pending_payment_id")
        if pending_payment_id:
            pending = await self.session.get(Payment, UUID(pending_payment_id))
            if pending is not None and pending.status == PaymentStatus.PENDING.value:
                return False

        return True

    async def _record_attempt(
        self,
        installment_id: UUID,
        attempt_count: int,
        pending_payment_id: Optional[UUID] = None,
        error: Optional[str] = None,
    ):
        installment = await self.session.get(LedgerPayment, installment_id)
        values = {
            "attempt_count": attempt_count,
            "last_attempt_at": utcnow(),
            "sync_error": error,
        }
        if pending_payment_id:
            values["staging_metadata"] = merge_metadata(
                installment.staging_metadata, pending_payment_id=str(pending_payment_id)
            )

        await self.session.execute(
            update(LedgerPayment).where(LedgerPayment.id == installment_id).values(**values)
        )
        await self.session.commit()
