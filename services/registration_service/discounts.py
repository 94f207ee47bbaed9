"""Discount code lookup and usage accounting."""
import logging
from typing import Optional
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.purchases import DiscountApplication

from .models import DiscountCode, DiscountUsage

logger = logging.getLogger(__name__)


async def apply_discount_code(
    session: AsyncSession, code: str, amount: int
) -> Optional[DiscountApplication]:
    """Price a discount code against an amount in cents."""
    result = await session.execute(
        select(DiscountCode).where(DiscountCode.code == code.strip().upper())
    )
    discount_code = result.scalar_one_or_none()
    if not discount_code or not discount_code.is_active:
        raise HTTPException(status_code=400, detail=f"Invalid discount code: {code}")

    amount_saved = min(amount, round(amount * discount_code.percentage / 100))
    if amount_saved <= 0:
        return None

    return DiscountApplication(
        discount_code_id=discount_code.id,
        code=discount_code.code,
        amount_saved=amount_saved,
        accounting_code=discount_code.accounting_code,
    )


class DiscountUsageRecorder:
    """Records discount usage once per member, code and item."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_usage(
        self,
        user_id: UUID,
        discount_code_id: UUID,
        item_id: UUID,
        item_type: str,
        amount_saved: int,
        payment_id: Optional[UUID] = None,
    ) -> bool:
        """
        Insert a usage row unless one already exists for the same tuple.

        Returns:
            True if a new row was written
        """
        result = await self.session.execute(
            select(DiscountUsage.id).where(
                DiscountUsage.user_id == user_id,
                DiscountUsage.discount_code_id == discount_code_id,
                DiscountUsage.item_id == item_id,
            )
        )
        if result.scalar_one_or_none():
            logger.info(
                f"Discount usage already recorded for user {user_id}, "
                f"code {discount_code_id}, item {item_id}"
            )
            return False

        self.session.add(
            DiscountUsage(
                user_id=user_id,
                discount_code_id=discount_code_id,
                item_id=item_id,
                item_type=item_type,
                payment_id=payment_id,
                amount_saved=amount_saved,
            )
        )

        try:
            await self.session.commit()
        except IntegrityError:
            # A concurrent completion recorded it first
            await self.session.rollback()
            logger.info(f"Discount usage for user {user_id} recorded concurrently")
            return False

        logger.info(
            f"Recorded discount usage for user {user_id}: code {discount_code_id}, "
            f"saved {amount_saved} cents"
        )
        return True
