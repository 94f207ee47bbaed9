"""Checkout: reserve, stage, then charge."""
import logging
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

from fastapi import HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.ledger_service.staging import StagingManager, split_installments
from services.notification_service.staging import EmailStager
from services.registration_service.discounts import DiscountUsageRecorder, apply_discount_code
from services.registration_service.models import Member, Membership, RegistrationCategory
from services.registration_service.reservations import ReservationManager
from shared.config import Settings
from shared.database import utcnow
from shared.exceptions import StagingCreationFailed
from shared.purchases import (
    DonationLine,
    MembershipPurchase,
    PaymentPlanTerms,
    RegistrationPurchase,
    StagingPayload,
)

from .completion_processor import (
    CompletionResult,
    PaymentCompletionProcessor,
    build_failed_payment_event,
    build_free_purchase_event,
    build_payment_event,
)
from .gateway import ChargeHandle
from .models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

SUCCEEDED_EVENT = "payment_intent.succeeded"
FAILED_EVENTS = ("payment_intent.payment_failed", "payment_intent.canceled")


class Gateway(Protocol):
    async def create_charge(
        self,
        amount: int,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        save_payment_method: bool = False,
    ) -> ChargeHandle:
        ...

    async def create_customer(self, email: str, name: str, metadata: Dict[str, Any]) -> str:
        ...

    async def get_charge_status(self, charge_id: str) -> str:
        ...


class RegistrationCheckoutRequest(BaseModel):
    user_id: UUID
    category_id: UUID
    discount_code: Optional[str] = None
    donation: Optional[DonationLine] = None
    payment_plan: Optional[PaymentPlanTerms] = None


class MembershipCheckoutRequest(BaseModel):
    user_id: UUID
    membership_id: UUID
    duration_months: int = Field(gt=0)
    discount_code: Optional[str] = None
    donation: Optional[DonationLine] = None
    payment_plan: Optional[PaymentPlanTerms] = None


class CheckoutResult(BaseModel):
    """What the client needs to confirm (or display) the purchase."""
    status: str  # requires_payment or completed
    payment_id: UUID
    staging_record_id: UUID
    reservation_id: Optional[UUID] = None
    charge_id: Optional[str] = None
    client_secret: Optional[str] = None
    amount: int  # cents charged now


class CheckoutService:
    """Synchronous purchase path for registrations and memberships."""

    def __init__(self, session: AsyncSession, gateway: Gateway, settings: Settings):
        self.session = session
        self.gateway = gateway
        self.settings = settings
        self.reservations = ReservationManager(
            session, gateway, ttl_seconds=settings.reservation_ttl_seconds
        )
        self.staging = StagingManager(
            session,
            bank_account_code=settings.ledger_bank_account_code,
            default_account_code=settings.ledger_default_account_code,
        )
        self.processor = PaymentCompletionProcessor(
            session,
            self.staging,
            EmailStager(session, settings),
            DiscountUsageRecorder(session),
        )

    async def start_registration_checkout(self, request: RegistrationCheckoutRequest) -> CheckoutResult:
        """
        Start a registration purchase.

        Capacity-limited categories get a reservation before anything is
        staged. The charge is only created once the staging record exists.

        Raises:
            CapacityExceeded: Category is full
            DuplicateReservation: Member already holds or paid for a seat
            StagingCreationFailed: Ledger staging failed; no charge was created
        """
        await self._get_member(request.user_id)
        category = await self.session.get(RegistrationCategory, request.category_id)
        if not category:
            raise HTTPException(status_code=404, detail="Registration category not found")

        discounts = await self._discounts(request.discount_code, category.price)

        purchase = RegistrationPurchase(
            registration_id=category.registration_id,
            category_id=category.id,
            registration_name=category.registration_name,
            category_name=category.name,
            season_name=category.season_name,
            amount=category.price,
            accounting_code=category.accounting_code,
        )

        reservation_id = None
        if category.max_capacity is not None:
            reservation = await self.reservations.reserve(request.user_id, request.category_id)
            reservation_id = reservation.id
            purchase = purchase.model_copy(update={"reservation_id": reservation_id})

        payload = StagingPayload(
            user_id=request.user_id,
            purchase=purchase,
            discounts=discounts,
            donation=request.donation,
            payment_plan=request.payment_plan,
        )
        return await self._checkout(payload, reservation_id)

    async def start_membership_checkout(self, request: MembershipCheckoutRequest) -> CheckoutResult:
        """Start a membership purchase. Memberships have no capacity, so no reservation."""
        await self._get_member(request.user_id)
        membership = await self.session.get(Membership, request.membership_id)
        if not membership or not membership.is_active:
            raise HTTPException(status_code=404, detail="Membership not found")

        amount = membership.price_monthly * request.duration_months
        discounts = await self._discounts(request.discount_code, amount)

        payload = StagingPayload(
            user_id=request.user_id,
            purchase=MembershipPurchase(
                membership_id=membership.id,
                name=membership.name,
                duration_months=request.duration_months,
                amount=amount,
                accounting_code=membership.accounting_code,
            ),
            discounts=discounts,
            donation=request.donation,
            payment_plan=request.payment_plan,
        )
        return await self._checkout(payload, reservation_id=None)

    async def handle_gateway_event(self, event: Dict[str, Any]) -> Optional[CompletionResult]:
        """
        Apply a verified gateway webhook event.

        Replays are ignored once the payment has reached a terminal status.

        Returns:
            The processor result, or None if the event needed no work
        """
        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}
        charge_id = intent.get("id")

        if event_type != SUCCEEDED_EVENT and event_type not in FAILED_EVENTS:
            logger.info(f"Ignoring gateway event {event_type}")
            return None

        charge_metadata = intent.get("metadata") or {}
        payment = await self._payment_for_charge(charge_id, charge_metadata)
        if not payment:
            logger.warning(f"No payment found for charge {charge_id} ({event_type})")
            return None

        if event_type == SUCCEEDED_EVENT:
            return await self.complete_charge(payment, intent, charge_metadata)
        return await self.fail_charge(payment, intent, canceled=event_type.endswith("canceled"))

    async def complete_charge(
        self, payment: Payment, intent: Dict[str, Any], charge_metadata: Dict[str, Any]
    ) -> Optional[CompletionResult]:
        """Mark a payment completed and run the completion processor once."""
        if payment.status == PaymentStatus.COMPLETED.value:
            logger.info(f"Payment {payment.id} already completed, ignoring replay")
            return None

        payment.status = PaymentStatus.COMPLETED.value
        payment.completed_at = utcnow()
        payment.gateway_charge_id = payment.gateway_charge_id or intent.get("id")
        payment.gateway_response = intent
        payment.failure_reason = None
        await self.session.commit()
        logger.info(f"Payment {payment.id} completed via charge {payment.gateway_charge_id}")

        completion = build_payment_event(
            payment, charge_metadata, intent.get("id"), payment_method_id=intent.get("payment_method")
        )
        if payment.reservation_id:
            await self.reservations.mark_paid(payment.reservation_id, payment.id)

        return await self.processor.process_payment_completion(completion)

    async def fail_charge(
        self, payment: Payment, intent: Dict[str, Any], canceled: bool = False
    ) -> Optional[CompletionResult]:
        """Mark a payment failed and stage the failure notice."""
        if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value):
            logger.info(f"Payment {payment.id} already {payment.status}, ignoring failure event")
            return None

        error = intent.get("last_payment_error") or {}
        failure_reason = error.get("message") or ("Payment canceled" if canceled else "Payment failed")

        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = failure_reason
        payment.gateway_response = intent
        await self.session.commit()
        logger.info(f"Payment {payment.id} failed: {failure_reason}")

        completion = build_failed_payment_event(payment, failure_reason, intent.get("id"))
        if payment.reservation_id:
            await self.reservations.mark_failed(payment.reservation_id)

        return await self.processor.process_payment_completion(completion)

    async def _checkout(self, payload: StagingPayload, reservation_id: Optional[UUID]) -> CheckoutResult:
        is_payment_plan = payload.payment_plan is not None and not payload.is_free
        charge_amount = payload.net_amount
        if is_payment_plan:
            charge_amount = split_installments(payload.net_amount, payload.payment_plan.installments)[0]

        payment = Payment(
            user_id=payload.user_id,
            total_amount=payload.total_amount,
            discount_amount=payload.discount_amount,
            final_amount=charge_amount,
            currency=self.settings.currency,
            status=PaymentStatus.PENDING.value,
            reservation_id=reservation_id,
            purchase_type=payload.purchase.product_type,
        )
        self.session.add(payment)
        await self.session.commit()
        payment_id = payment.id

        staging_record_id = await self.staging.create_immediate_staging(
            payload, is_free=payload.is_free, is_payment_plan=is_payment_plan
        )
        if staging_record_id is None:
            await self._abandon(payment_id, reservation_id, "Ledger staging failed")
            raise StagingCreationFailed(payload.user_id)

        payment.staging_record_id = staging_record_id
        await self.session.commit()

        if payload.is_free:
            return await self._complete_free(payload, payment_id, staging_record_id, reservation_id)

        charge_metadata = {
            "staging_record_id": staging_record_id,
            "user_id": payload.user_id,
            "payment_id": payment_id,
            "reservation_id": reservation_id,
            "product_type": payload.purchase.product_type,
        }
        if is_payment_plan:
            charge_metadata.update(is_payment_plan="true", installment_number=1)

        customer_id = None
        try:
            if is_payment_plan:
                # Later installments are charged off-session against this customer
                member = await self._get_member(payload.user_id)
                customer_id = await self.gateway.create_customer(
                    member.email, member.full_name, {"user_id": payload.user_id}
                )
            charge = await self.gateway.create_charge(
                charge_amount,
                charge_metadata,
                idempotency_key=f"checkout-{payment_id}",
                customer_id=customer_id,
                save_payment_method=is_payment_plan,
            )
        except Exception as e:
            logger.error(f"Charge creation failed for payment {payment_id}: {str(e)}", exc_info=True)
            await self._abandon(payment_id, reservation_id, f"Charge creation failed: {str(e)}")
            raise HTTPException(status_code=502, detail="Unable to create payment with the gateway")

        payment.gateway_charge_id = charge.id
        await self.session.commit()

        await self.staging.link_charge(staging_record_id, charge.id, payment_id, customer_id=customer_id)
        if reservation_id:
            await self.reservations.mark_processing(reservation_id, charge.id, payment_id)

        logger.info(
            f"Checkout started for user {payload.user_id}: payment {payment_id}, "
            f"staging {staging_record_id}, charge {charge.id}"
        )
        return CheckoutResult(
            status="requires_payment",
            payment_id=payment_id,
            staging_record_id=staging_record_id,
            reservation_id=reservation_id,
            charge_id=charge.id,
            client_secret=charge.client_secret,
            amount=charge_amount,
        )

    async def _complete_free(
        self,
        payload: StagingPayload,
        payment_id: UUID,
        staging_record_id: UUID,
        reservation_id: Optional[UUID],
    ) -> CheckoutResult:
        """Zero-value purchases complete inline without touching the gateway."""
        await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(status=PaymentStatus.COMPLETED.value, completed_at=utcnow())
        )
        await self.session.commit()

        if reservation_id:
            await self.reservations.mark_paid(reservation_id, payment_id)

        event = build_free_purchase_event(
            payload,
            staging_record_id=staging_record_id,
            payment_id=payment_id,
            record_id=reservation_id,
        )
        await self.processor.process_payment_completion(event)

        logger.info(f"Free {payload.purchase.product_type} completed for user {payload.user_id}")
        return CheckoutResult(
            status="completed",
            payment_id=payment_id,
            staging_record_id=staging_record_id,
            reservation_id=reservation_id,
            amount=0,
        )

    async def _abandon(self, payment_id: UUID, reservation_id: Optional[UUID], reason: str):
        await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(status=PaymentStatus.FAILED.value, failure_reason=reason)
        )
        await self.session.commit()

        if reservation_id:
            await self.reservations.release(reservation_id)
        logger.warning(f"Abandoned checkout for payment {payment_id}: {reason}")

    async def _discounts(self, code: Optional[str], amount: int) -> list:
        if not code:
            return []
        discount = await apply_discount_code(self.session, code, amount)
        return [discount] if discount else []

    async def _get_member(self, user_id: UUID) -> Member:
        member = await self.session.get(Member, user_id)
        if not member:
            raise HTTPException(status_code=404, detail="Member not found")
        return member

    async def _payment_for_charge(
        self, charge_id: Optional[str], charge_metadata: Dict[str, Any]
    ) -> Optional[Payment]:
        if charge_id:
            result = await self.session.execute(
                select(Payment).where(Payment.gateway_charge_id == charge_id)
            )
            payment = result.scalar_one_or_none()
            if payment:
                return payment

        # The charge can settle before its id was saved on the payment row
        payment_id = charge_metadata.get("payment_id")
        if not payment_id:
            return None
        try:
            return await self.session.get(Payment, UUID(str(payment_id)))
        except ValueError:
            logger.warning(f"Malformed payment_id in metadata of charge {charge_id}")
            return None
