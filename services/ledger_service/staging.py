"""Ledger staging: invoices, line items and payment rows for a purchase."""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.purchases import DiscountApplication, StagingPayload

from .models import (
    InvoiceStatus,
    LedgerInvoice,
    LedgerInvoiceLineItem,
    LedgerPayment,
    LineItemType,
    SyncStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class StagingRecord:
    """A staged invoice with its line items and payment rows."""
    invoice: LedgerInvoice
    line_items: list[LedgerInvoiceLineItem] = field(default_factory=list)
    payments: list[LedgerPayment] = field(default_factory=list)

    @property
    def payment_shell(self) -> Optional[LedgerPayment]:
        """The single payment row of a non-plan purchase."""
        for payment in self.payments:
            if payment.installment_number is None:
                return payment
        return None

    def installment(self, number: int) -> Optional[LedgerPayment]:
        for payment in self.payments:
            if payment.installment_number == number:
                return payment
        return None


def merge_metadata(current: Optional[Dict[str, Any]], **updates: Any) -> Dict[str, Any]:
    """Return a new metadata dict; JSON columns only notice reassignment."""
    merged = dict(current or {})
    merged.update({key: value for key, value in updates.items() if value is not None})
    return merged


def split_installments(amount: int, installments: int) -> list[int]:
    """Spread cents over installments, earlier ones absorbing the remainder."""
    base, remainder = divmod(amount, installments)
    return [base + (1 if index < remainder else 0) for index in range(installments)]


def applied_discounts(payload: StagingPayload) -> list[tuple[DiscountApplication, int]]:
    """Pair each discount with the cents it actually takes off the product line."""
    # Discounts cannot take the product line below zero
    applied = []
    remaining = payload.purchase.amount
    for discount in payload.discounts:
        amount = min(discount.amount_saved, remaining)
        if amount <= 0:
            continue
        remaining -= amount
        applied.append((discount, amount))
    return applied


class StagingManager:
    """Builds and locates the staging records behind purchases."""

    def __init__(
        self,
        session: AsyncSession,
        bank_account_code: str = "090",
        default_account_code: str = "SALES",
    ):
        self.session = session
        self.bank_account_code = bank_account_code
        self.default_account_code = default_account_code

    async def create_immediate_staging(
        self,
        payload: StagingPayload,
        is_free: bool = False,
        is_payment_plan: bool = False,
    ) -> Optional[UUID]:
        """
        Stage the ledger records for a purchase before any charge exists.

        Args:
            payload: Purchase being staged
            is_free: Zero-value purchase; the invoice is authorised immediately
            is_payment_plan: Stage one row per installment instead of a payment shell

        Returns:
            Staging record id, or None if nothing could be staged. A None
            result means the purchase must not proceed.
        """
        if is_free and not payload.is_free:
            logger.error(
                f"Refusing free staging for user {payload.user_id}: "
                f"net amount is {payload.net_amount} cents"
            )
            return None
        if is_payment_plan and payload.payment_plan is None:
            logger.error(f"Payment plan staging for user {payload.user_id} has no plan terms")
            return None

        try:
            invoice = self._build_invoice(
                payload,
                invoice_status=InvoiceStatus.AUTHORISED if is_free else InvoiceStatus.DRAFT,
                sync_status=SyncStatus.PENDING if is_free else SyncStatus.STAGED,
                is_payment_plan=is_payment_plan,
            )
            self.session.add(invoice)
            self.session.add_all(self._build_line_items(invoice.id, payload))

            if is_payment_plan:
                self.session.add_all(self._build_installments(invoice.id, payload))
            elif payload.net_amount > 0:
                self.session.add(self._build_payment_shell(invoice.id, payload))

            await self.session.commit()

        except Exception as e:
            await self.session.rollback()
            logger.error(
                f"Failed to stage ledger records for user {payload.user_id}: {str(e)}",
                exc_info=True,
            )
            return None

        logger.info(
            f"Staged invoice {invoice.id} for user {payload.user_id} "
            f"(net {payload.net_amount} cents, free={is_free}, plan={is_payment_plan})"
        )
        return invoice.id

    async def create_free_purchase_staging(self, payload: StagingPayload) -> Optional[UUID]:
        """Stage a zero-value purchase that had no staging record."""
        return await self.create_immediate_staging(payload, is_free=True)

    async def create_paid_purchase_staging(
        self,
        payload: StagingPayload,
        payment_id: UUID,
        charge_id: Optional[str] = None,
    ) -> Optional[UUID]:
        """
        Stage a purchase whose payment already completed.

        Used by operators to repair purchases that were charged without a
        staging record.
        """
        if payload.is_free:
            return await self.create_free_purchase_staging(payload)

        try:
            invoice = self._build_invoice(
                payload,
                invoice_status=InvoiceStatus.AUTHORISED,
                sync_status=SyncStatus.PENDING,
                is_payment_plan=False,
            )
            invoice.payment_id = payment_id
            invoice.staging_metadata = merge_metadata(
                invoice.staging_metadata, charge_id=charge_id, payment_id=str(payment_id)
            )
            self.session.add(invoice)
            self.session.add_all(self._build_line_items(invoice.id, payload))

            shell = self._build_payment_shell(invoice.id, payload)
            shell.payment_id = payment_id
            shell.reference = charge_id
            shell.sync_status = SyncStatus.PENDING.value
            shell.staging_metadata = merge_metadata(
                shell.staging_metadata, charge_id=charge_id, payment_id=str(payment_id)
            )
            self.session.add(shell)

            await self.session.commit()

        except Exception as e:
            await self.session.rollback()
            logger.error(
                f"Failed to stage paid purchase for payment {payment_id}: {str(e)}",
                exc_info=True,
            )
            return None

        logger.info(f"Staged invoice {invoice.id} for completed payment {payment_id}")
        return invoice.id

    async def get_staging_record(
        self, staging_record_id: UUID, for_update: bool = False
    ) -> Optional[StagingRecord]:
        """Load a staging record strictly by id."""
        query = select(LedgerInvoice).where(LedgerInvoice.id == staging_record_id)
        if for_update:
            query = query.with_for_update()

        result = await self.session.execute(query)
        invoice = result.scalar_one_or_none()
        if not invoice:
            return None

        line_items = await self.session.execute(
            select(LedgerInvoiceLineItem)
            .where(LedgerInvoiceLineItem.invoice_id == invoice.id)
            .order_by(LedgerInvoiceLineItem.created_at)
        )
        payments = await self.session.execute(
            select(LedgerPayment)
            .where(LedgerPayment.invoice_id == invoice.id)
            .order_by(LedgerPayment.installment_number)
        )

        return StagingRecord(
            invoice=invoice,
            line_items=list(line_items.scalars().all()),
            payments=list(payments.scalars().all()),
        )

    async def link_charge(
        self,
        staging_record_id: UUID,
        charge_id: str,
        payment_id: Optional[UUID] = None,
        customer_id: Optional[str] = None,
    ) -> bool:
        """Remember the gateway charge (and customer) created for a staging record."""
        invoice = await self.session.get(LedgerInvoice, staging_record_id)
        if not invoice:
            logger.error(f"Cannot link charge {charge_id}: staging record {staging_record_id} missing")
            return False

        invoice.staging_metadata = merge_metadata(
            invoice.staging_metadata,
            charge_id=charge_id,
            pending_payment_id=str(payment_id) if payment_id else None,
            gateway_customer_id=customer_id,
        )
        await self.session.commit()

        logger.info(f"Linked charge {charge_id} to staging record {staging_record_id}")
        return True

    async def activate_installment(
        self,
        staging_record_id: UUID,
        installment_number: int,
        payment_id: UUID,
        charge_id: Optional[str] = None,
        commit: bool = True,
    ) -> bool:
        """
        Move one staged installment to pending once its charge has settled.

        Returns:
            True if the installment is now linked to the payment
        """
        result = await self.session.execute(
            select(LedgerPayment).where(
                LedgerPayment.invoice_id == staging_record_id,
                LedgerPayment.installment_number == installment_number,
            )
        )
        installment = result.scalar_one_or_none()
        if not installment:
            logger.error(
                f"Installment {installment_number} of staging record {staging_record_id} not found"
            )
            return False

        if installment.sync_status != SyncStatus.STAGED.value:
            if installment.payment_id == payment_id:
                return True
            logger.warning(
                f"Installment {installment_number} of {staging_record_id} is already "
                f"{installment.sync_status} for payment {installment.payment_id}"
            )
            return False

        installment.payment_id = payment_id
        installment.bank_account_code = self.bank_account_code
        installment.reference = charge_id or installment.reference
        installment.sync_status = SyncStatus.PENDING.value
        installment.staging_metadata = merge_metadata(
            installment.staging_metadata, payment_id=str(payment_id), charge_id=charge_id
        )

        if commit:
            await self.session.commit()

        logger.info(
            f"Activated installment {installment_number} of staging record {staging_record_id}"
        )
        return True

    def _build_invoice(
        self,
        payload: StagingPayload,
        invoice_status: InvoiceStatus,
        sync_status: SyncStatus,
        is_payment_plan: bool,
    ) -> LedgerInvoice:
        purchase = payload.purchase
        metadata = {
            "user_id": str(payload.user_id),
            "product_type": purchase.product_type,
            "item_id": str(purchase.item_id),
            "description": purchase.description,
            "discounts": [
                {
                    "discount_code_id": str(discount.discount_code_id),
                    "code": discount.code,
                    "amount_saved": amount,
                }
                for discount, amount in applied_discounts(payload)
            ],
            "is_payment_plan": is_payment_plan,
        }
        if payload.charge_id:
            metadata["charge_id"] = payload.charge_id
        if is_payment_plan:
            metadata["installments"] = payload.payment_plan.installments

        return LedgerInvoice(
            id=uuid4(),
            user_id=payload.user_id,
            invoice_type="ACCREC",
            invoice_status=invoice_status.value,
            total_amount=payload.total_amount,
            discount_amount=payload.discount_amount,
            net_amount=payload.net_amount,
            sync_status=sync_status.value,
            staging_metadata=metadata,
        )

    def _build_line_items(
        self, invoice_id: UUID, payload: StagingPayload
    ) -> list[LedgerInvoiceLineItem]:
        purchase = payload.purchase
        line_items = [
            LedgerInvoiceLineItem(
                invoice_id=invoice_id,
                line_item_type=(
                    LineItemType.MEMBERSHIP.value
                    if purchase.product_type == "membership"
                    else LineItemType.REGISTRATION.value
                ),
                item_id=purchase.item_id,
                description=purchase.description,
                quantity=1,
                unit_amount=purchase.amount,
                line_amount=purchase.amount,
                account_code=purchase.accounting_code or self.default_account_code,
            )
        ]

        if payload.donation:
            line_items.append(
                LedgerInvoiceLineItem(
                    invoice_id=invoice_id,
                    line_item_type=LineItemType.DONATION.value,
                    description=payload.donation.description,
                    quantity=1,
                    unit_amount=payload.donation.amount,
                    line_amount=payload.donation.amount,
                    account_code=payload.donation.accounting_code or self.default_account_code,
                )
            )

        for discount, amount in applied_discounts(payload):
            line_items.append(
                LedgerInvoiceLineItem(
                    invoice_id=invoice_id,
                    line_item_type=LineItemType.DISCOUNT.value,
                    discount_code_id=discount.discount_code_id,
                    description=f"Discount: {discount.code}",
                    quantity=1,
                    unit_amount=-amount,
                    line_amount=-amount,
                    account_code=discount.accounting_code or self.default_account_code,
                )
            )

        return line_items

    def _build_payment_shell(self, invoice_id: UUID, payload: StagingPayload) -> LedgerPayment:
        return LedgerPayment(
            invoice_id=invoice_id,
            bank_account_code=self.bank_account_code,
            amount_paid=payload.net_amount,
            payment_method="stripe",
            reference=payload.charge_id,
            sync_status=SyncStatus.STAGED.value,
            staging_metadata={"charge_id": payload.charge_id} if payload.charge_id else {},
        )

    def _build_installments(self, invoice_id: UUID, payload: StagingPayload) -> list[LedgerPayment]:
        plan = payload.payment_plan
        first_date = plan.first_installment_date or date.today()
        amounts = split_installments(payload.net_amount, plan.installments)

        return [
            LedgerPayment(
                invoice_id=invoice_id,
                bank_account_code=self.bank_account_code,
                amount_paid=amount,
                payment_method="stripe",
                installment_number=index + 1,
                scheduled_date=first_date + timedelta(days=plan.interval_days * index),
                sync_status=SyncStatus.STAGED.value,
                staging_metadata={"installment_number": index + 1, "installments": plan.installments},
            )
            for index, amount in enumerate(amounts)
        ]
