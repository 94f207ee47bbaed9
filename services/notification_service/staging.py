"""Email staging for payment outcomes."""
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.registration_service.models import Member
from shared.config import Settings
from shared.events import BaseCompletionEvent, EventType

from .models import EmailEventType, EmailLog, EmailStatus

logger = logging.getLogger(__name__)


class EmailStager:
    """Queues transactional emails for the dispatch pass."""

    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings

    async def stage_confirmation_email(
        self,
        event: BaseCompletionEvent,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Stage the purchase confirmation for a completed payment.

        Args:
            event: Completion event
            details: Purchase details from the staging record (description, product_type)

        Returns:
            True if an email is staged for this outcome
        """
        details = details or {}
        if self._is_membership(event, details):
            email_event = EmailEventType.MEMBERSHIP_PURCHASED
            template_id = self.settings.email_template_membership_purchased
            subject = "Your membership is confirmed"
        else:
            email_event = EmailEventType.REGISTRATION_COMPLETED
            template_id = self.settings.email_template_registration_completed
            subject = "Your registration is confirmed"

        outcome_key = event.metadata.staging_record_id or event.payment_id or event.record_id
        return await self._stage(
            event=event,
            email_event=email_event,
            subject=subject,
            template_id=template_id,
            dedupe_key=f"{email_event.value}:{outcome_key}" if outcome_key else None,
            email_data={
                "amount": event.amount,
                "description": details.get("description"),
                "charge_id": event.metadata.charge_id,
            },
        )

    async def stage_installment_email(
        self,
        event: BaseCompletionEvent,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Stage the receipt for a payment plan installment after the first."""
        details = details or {}
        installment_number = event.metadata.installment_number
        total_installments = details.get("installments")
        is_final_payment = total_installments is not None and installment_number >= total_installments

        return await self._stage(
            event=event,
            email_event=EmailEventType.PLAN_PAYMENT_PROCESSED,
            subject=f"Payment Plan Payment {'Complete' if is_final_payment else 'Processed'}",
            template_id=self.settings.email_template_plan_payment_processed,
            dedupe_key=(
                f"{EmailEventType.PLAN_PAYMENT_PROCESSED.value}:"
                f"{event.metadata.staging_record_id}:{installment_number}"
            ),
            email_data={
                "installment_amount": event.amount,
                "installment_number": installment_number,
                "total_installments": total_installments,
                "is_final_payment": is_final_payment,
                "description": details.get("description"),
                "charge_id": event.metadata.charge_id,
            },
        )

    async def stage_failed_payment_email(self, event: BaseCompletionEvent) -> bool:
        """Stage the notice for a declined or canceled charge."""
        outcome_key = event.metadata.charge_id or event.payment_id
        return await self._stage(
            event=event,
            email_event=EmailEventType.PAYMENT_FAILED,
            subject="Your payment could not be completed",
            template_id=self.settings.email_template_payment_failed,
            dedupe_key=f"{EmailEventType.PAYMENT_FAILED.value}:{outcome_key}" if outcome_key else None,
            email_data={
                "amount": event.amount,
                "failure_reason": event.metadata.failure_reason or "Payment was declined",
                "charge_id": event.metadata.charge_id,
            },
        )

    async def _stage(
        self,
        event: BaseCompletionEvent,
        email_event: EmailEventType,
        subject: str,
        template_id: str,
        dedupe_key: Optional[str],
        email_data: Dict[str, Any],
    ) -> bool:
        try:
            if dedupe_key and await self._already_staged(dedupe_key):
                logger.info(f"Email {dedupe_key} already staged, skipping")
                return True

            member = await self.session.get(Member, event.user_id)
            if not member:
                logger.error(f"Cannot stage {email_event.value} email: member {event.user_id} not found")
                return False

            email_log = EmailLog(
                user_id=event.user_id,
                email_address=member.email,
                event_type=email_event.value,
                subject=subject,
                template_id=template_id,
                dedupe_key=dedupe_key,
                status=EmailStatus.PENDING.value,
                email_data={
                    **{key: value for key, value in email_data.items() if value is not None},
                    "first_name": member.first_name,
                    "related_entity_type": event.event_type.value,
                    "related_entity_id": _as_str(event.record_id),
                    "payment_id": _as_str(event.payment_id),
                    "staging_record_id": _as_str(event.metadata.staging_record_id),
                },
            )
            self.session.add(email_log)
            await self.session.commit()

        except Exception as e:
            await self.session.rollback()
            logger.error(
                f"Failed to stage {email_event.value} email for user {event.user_id}: {str(e)}",
                exc_info=True,
            )
            return False

        logger.info(f"Staged {email_event.value} email {email_log.id} for user {event.user_id}")
        return True

    async def _already_staged(self, dedupe_key: str) -> bool:
        result = await self.session.execute(
            select(EmailLog.id).where(EmailLog.dedupe_key == dedupe_key)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    def _is_membership(event: BaseCompletionEvent, details: Dict[str, Any]) -> bool:
        if event.event_type == EventType.USER_MEMBERSHIPS:
            return True
        if event.event_type == EventType.USER_REGISTRATIONS:
            return False
        return details.get("product_type") == "membership"


def _as_str(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value else None
