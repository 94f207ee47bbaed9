"""Payment completion processor: drives a terminal payment outcome to its side effects."""
import logging
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from services.ledger_service.models import InvoiceStatus, SyncStatus
from services.ledger_service.staging import StagingManager, StagingRecord, merge_metadata
from services.notification_service.staging import EmailStager
from services.registration_service.discounts import DiscountUsageRecorder
from shared.events import (
    BaseCompletionEvent,
    CompletionMetadata,
    EventType,
    FailedPaymentEvent,
    FreePurchaseEvent,
    GatewayPaymentEvent,
    TriggerSource,
)
from shared.exceptions import StagingCreationFailed, StagingRecordMismatch, StagingRecordNotFound
from shared.purchases import StagingPayload

from .models import Payment

logger = logging.getLogger(__name__)

# Sync states a completion may still move to pending
_TRANSITIONABLE = (SyncStatus.STAGED.value, SyncStatus.PENDING.value)


class CompletionStage(str, Enum):
    """Steps of a payment outcome."""
    RECEIVED = "received"
    STAGING_RESOLVED = "staging_resolved"
    EMAILS_STAGED = "emails_staged"
    DISCOUNTS_UPDATED = "discounts_updated"
    FAILED_PATH = "failed_path"
    DONE = "done"


class CompletionResult(BaseModel):
    """What one processor run did."""
    event_id: UUID
    staging_record_id: Optional[UUID] = None
    stages: list[CompletionStage] = Field(default_factory=list)
    staging_created: bool = False
    staging_transitioned: bool = False
    email_staged: bool = False
    discounts_recorded: int = 0


class PaymentCompletionProcessor:
    """Reconciles a terminal payment outcome with ledger staging, email and discounts."""

    def __init__(
        self,
        session: AsyncSession,
        staging_manager: StagingManager,
        email_stager: EmailStager,
        discount_recorder: DiscountUsageRecorder,
    ):
        self.session = session
        self.staging_manager = staging_manager
        self.email_stager = email_stager
        self.discount_recorder = discount_recorder

    async def process_payment_completion(self, event: BaseCompletionEvent) -> CompletionResult:
        """
        Process a payment completion event.

        Called from gateway webhooks, inline for zero-value purchases, and for
        failed charges. Email and discount failures are logged and absorbed;
        only staging resolution raises.

        Raises:
            StagingRecordNotFound: No staging record for a completed payment
            StagingRecordMismatch: Staging record belongs to another purchase
            StagingCreationFailed: A free purchase could not be staged
        """
        result = CompletionResult(event_id=event.event_id, stages=[CompletionStage.RECEIVED])
        logger.info(
            f"Processing {event.trigger_source} completion for user {event.user_id} "
            f"(payment={event.payment_id}, staging={event.metadata.staging_record_id})"
        )

        if event.metadata.failed:
            result.stages.append(CompletionStage.FAILED_PATH)
            result.email_staged = await self._stage_failure_email(event)
            result.stages.append(CompletionStage.DONE)
            logger.info(f"Completed failed-payment processing for user {event.user_id}")
            return result

        record = await self._resolve_staging_record(event, result)
        # Later phases may roll back the session, which expires ORM instances
        staging_record_id = record.invoice.id
        staging_metadata = dict(record.invoice.staging_metadata or {})
        result.staging_record_id = staging_record_id
        result.stages.append(CompletionStage.STAGING_RESOLVED)

        if event.metadata.is_later_installment:
            # Confirmation and discounts belong to the first installment
            result.email_staged = await self._stage_installment_email(event, staging_metadata)
            result.stages.append(CompletionStage.EMAILS_STAGED)
        else:
            result.email_staged = await self._stage_confirmation_email(event, staging_metadata)
            result.stages.append(CompletionStage.EMAILS_STAGED)

            result.discounts_recorded = await self._update_discount_usage(event, staging_metadata)
            result.stages.append(CompletionStage.DISCOUNTS_UPDATED)

        result.stages.append(CompletionStage.DONE)
        logger.info(f"Completed {event.trigger_source} processing for staging record {staging_record_id}")
        return result

    async def _resolve_staging_record(
        self, event: BaseCompletionEvent, result: CompletionResult
    ) -> StagingRecord:
        """Find the staging record strictly by id and move it to pending."""
        staging_record_id = event.metadata.staging_record_id
        record = None
        if staging_record_id:
            record = await self.staging_manager.get_staging_record(staging_record_id, for_update=True)

        if record is None:
            if isinstance(event, FreePurchaseEvent):
                record = await self._create_free_staging(event)
                result.staging_created = True
            else:
                await self.session.rollback()
                reason = (
                    "Payment completion has no staging_record_id"
                    if not staging_record_id
                    else f"Staging record {staging_record_id} not found"
                )
                logger.error(
                    f"Reconciliation failure requiring manual review: {reason} "
                    f"(user={event.user_id}, payment={event.payment_id}, "
                    f"charge={event.metadata.charge_id})"
                )
                raise StagingRecordNotFound(
                    reason, staging_record_id=staging_record_id, payment_id=event.payment_id
                )

        await self._verify_ownership(event, record)
        result.staging_transitioned = await self._apply_completion(event, record)
        return record

    async def _create_free_staging(self, event: FreePurchaseEvent) -> StagingRecord:
        staging_record_id = await self.staging_manager.create_free_purchase_staging(
            event.staging_payload
        )
        if staging_record_id is None:
            logger.error(f"Could not stage free purchase for user {event.user_id}")
            raise StagingCreationFailed(event.user_id)

        record = await self.staging_manager.get_staging_record(staging_record_id, for_update=True)
        logger.info(f"Created staging record {staging_record_id} for free purchase")
        return record

    async def _verify_ownership(self, event: BaseCompletionEvent, record: StagingRecord):
        invoice = record.invoice
        # Read before any rollback expires the instance
        invoice_id = invoice.id
        owner_id = invoice.user_id
        linked_payment_id = invoice.payment_id
        later_installment = event.metadata.is_later_installment

        problem = None
        if owner_id != event.user_id:
            problem = f"Staging record {invoice_id} belongs to user {owner_id}, not {event.user_id}"
        elif (
            not later_installment
            and linked_payment_id
            and event.payment_id
            and linked_payment_id != event.payment_id
        ):
            problem = (
                f"Staging record {invoice_id} is linked to payment {linked_payment_id}, "
                f"not {event.payment_id}"
            )

        if problem:
            await self.session.rollback()
            logger.error(f"Reconciliation failure requiring manual review: {problem}")
            raise StagingRecordMismatch(
                problem, staging_record_id=invoice_id, payment_id=event.payment_id
            )

    async def _apply_completion(self, event: BaseCompletionEvent, record: StagingRecord) -> bool:
        """
        Authorise the invoice and link its payment row.

        Returns:
            False when the record had already moved past pending
        """
        invoice = record.invoice
        metadata = event.metadata

        if metadata.is_later_installment:
            return await self._apply_installment(event, record)

        if invoice.sync_status not in _TRANSITIONABLE:
            await self.session.commit()
            logger.info(
                f"Staging record {invoice.id} is already {invoice.sync_status}; leaving it untouched"
            )
            return False

        invoice.sync_status = SyncStatus.PENDING.value
        invoice.invoice_status = InvoiceStatus.AUTHORISED.value
        invoice.sync_error = None
        if event.payment_id:
            invoice.payment_id = event.payment_id
        invoice.staging_metadata = merge_metadata(
            invoice.staging_metadata,
            charge_id=metadata.charge_id,
            payment_id=str(event.payment_id) if event.payment_id else None,
            is_payment_plan=metadata.is_payment_plan or None,
            payment_plan_id=str(metadata.payment_plan_id) if metadata.payment_plan_id else None,
            payment_method_id=metadata.payment_method_id,
        )

        if metadata.is_payment_plan:
            if event.payment_id:
                await self.staging_manager.activate_installment(
                    invoice.id,
                    metadata.installment_number,
                    event.payment_id,
                    metadata.charge_id,
                    commit=False,
                )
        else:
            shell = record.payment_shell
            if shell is not None and shell.sync_status in _TRANSITIONABLE and event.payment_id:
                shell.payment_id = event.payment_id
                shell.bank_account_code = self.staging_manager.bank_account_code
                shell.reference = shell.reference or metadata.charge_id
                shell.sync_status = SyncStatus.PENDING.value
                shell.staging_metadata = merge_metadata(
                    shell.staging_metadata,
                    payment_id=str(event.payment_id),
                    charge_id=metadata.charge_id,
                )

        await self.session.commit()
        logger.info(f"Staging record {invoice.id} authorised and pending sync")
        return True

    async def _apply_installment(self, event: BaseCompletionEvent, record: StagingRecord) -> bool:
        """
        Link a later installment's payment to its staged row.

        The invoice itself was authorised with the first installment and may
        already be synced; only the installment row moves.
        """
        invoice_id = record.invoice.id
        installment_number = event.metadata.installment_number
        activated = False
        if event.payment_id:
            activated = await self.staging_manager.activate_installment(
                invoice_id,
                installment_number,
                event.payment_id,
                event.metadata.charge_id,
                commit=False,
            )
        await self.session.commit()

        if not activated:
            logger.error(
                f"Reconciliation failure requiring manual review: installment {installment_number} "
                f"of staging record {invoice_id} not linked to payment {event.payment_id}"
            )
        return activated

    async def _stage_confirmation_email(
        self, event: BaseCompletionEvent, metadata: Dict[str, Any]
    ) -> bool:
        try:
            return await self.email_stager.stage_confirmation_email(
                event,
                details={
                    "description": metadata.get("description"),
                    "product_type": metadata.get("product_type"),
                },
            )
        except Exception as e:
            logger.error(f"Failed to stage confirmation email: {str(e)}", exc_info=True)
            await self.session.rollback()
            return False

    async def _stage_installment_email(
        self, event: BaseCompletionEvent, metadata: Dict[str, Any]
    ) -> bool:
        try:
            return await self.email_stager.stage_installment_email(
                event,
                details={
                    "description": metadata.get("description"),
                    "installments": metadata.get("installments"),
                },
            )
        except Exception as e:
            logger.error(f"Failed to stage installment email: {str(e)}", exc_info=True)
            await self.session.rollback()
            return False

    async def _stage_failure_email(self, event: BaseCompletionEvent) -> bool:
        try:
            return await self.email_stager.stage_failed_payment_email(event)
        except Exception as e:
            logger.error(f"Failed to stage failed-payment email: {str(e)}", exc_info=True)
            await self.session.rollback()
            return False

    async def _update_discount_usage(
        self, event: BaseCompletionEvent, metadata: Dict[str, Any]
    ) -> int:
        discounts = metadata.get("discounts") or []
        if not discounts:
            return 0

        recorded = 0
        try:
            for discount in discounts:
                if await self.discount_recorder.record_usage(
                    user_id=event.user_id,
                    discount_code_id=UUID(discount["discount_code_id"]),
                    item_id=UUID(metadata["item_id"]),
                    item_type=metadata.get("product_type", "registration"),
                    amount_saved=discount["amount_saved"],
                    payment_id=event.payment_id,
                ):
                    recorded += 1
        except Exception as e:
            logger.error(f"Failed to update discount usage: {str(e)}", exc_info=True)
            await self.session.rollback()

        return recorded


def _event_type_for(purchase_type: Optional[str]) -> EventType:
    if purchase_type == "membership":
        return EventType.USER_MEMBERSHIPS
    if purchase_type == "registration":
        return EventType.USER_REGISTRATIONS
    return EventType.PAYMENTS


def _parse_uuid(value: Any) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        logger.warning(f"Ignoring malformed id in charge metadata: {value}")
        return None


def build_payment_event(
    payment: Payment,
    charge_metadata: Dict[str, Any],
    charge_id: Optional[str] = None,
    payment_method_id: Optional[str] = None,
) -> GatewayPaymentEvent:
    """Build a completion event from a settled charge and its payment row."""
    return GatewayPaymentEvent(
        event_type=_event_type_for(payment.purchase_type),
        record_id=payment.reservation_id,
        user_id=payment.user_id,
        payment_id=payment.id,
        amount=payment.final_amount,
        metadata=CompletionMetadata(
            charge_id=charge_id or payment.gateway_charge_id,
            staging_record_id=_parse_uuid(charge_metadata.get("staging_record_id")),
            is_payment_plan=str(charge_metadata.get("is_payment_plan", "")).lower() == "true",
            payment_plan_id=_parse_uuid(charge_metadata.get("payment_plan_id")),
            installment_number=int(charge_metadata.get("installment_number") or 1),
            payment_method_id=payment_method_id,
        ),
    )


def build_failed_payment_event(
    payment: Payment,
    failure_reason: str,
    charge_id: Optional[str] = None,
) -> FailedPaymentEvent:
    """Build the event for a declined or canceled charge."""
    return FailedPaymentEvent(
        event_type=EventType.PAYMENTS,
        record_id=payment.reservation_id,
        user_id=payment.user_id,
        payment_id=payment.id,
        amount=payment.final_amount,
        metadata=CompletionMetadata(
            charge_id=charge_id or payment.gateway_charge_id,
            staging_record_id=payment.staging_record_id,
            failure_reason=failure_reason,
            failed=True,
        ),
    )


def build_free_purchase_event(
    payload: StagingPayload,
    staging_record_id: Optional[UUID] = None,
    payment_id: Optional[UUID] = None,
    record_id: Optional[UUID] = None,
) -> FreePurchaseEvent:
    """Build the inline completion event of a zero-value purchase."""
    is_membership = payload.purchase.product_type == "membership"
    return FreePurchaseEvent(
        event_type=EventType.USER_MEMBERSHIPS if is_membership else EventType.USER_REGISTRATIONS,
        trigger_source=(
            TriggerSource.FREE_MEMBERSHIP.value if is_membership else TriggerSource.FREE_REGISTRATION.value
        ),
        record_id=record_id,
        user_id=payload.user_id,
        payment_id=payment_id,
        amount=0,
        metadata=CompletionMetadata(staging_record_id=staging_record_id),
        staging_payload=payload,
    )
