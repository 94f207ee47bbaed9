"""Capacity reservations for limited-capacity registration categories."""
import logging
import math
from datetime import timedelta
from typing import Optional, Protocol
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.payment_service.gateway import SUCCEEDED, TERMINAL_FAILURE_STATUSES
from shared.database import utcnow
from shared.exceptions import CapacityExceeded, DuplicateReservation, GatewayStatusAmbiguous

from .models import (
    ACTIVE_RESERVATION_STATUSES,
    RegistrationCategory,
    Reservation,
    ReservationStatus,
)

logger = logging.getLogger(__name__)


# Order in which a member's existing rows for a category are considered
_STATUS_PRIORITY = {
    ReservationStatus.PAID.value: 0,
    ReservationStatus.PROCESSING.value: 1,
    ReservationStatus.AWAITING_PAYMENT.value: 2,
    ReservationStatus.FAILED.value: 3,
}


class ChargeStatusSource(Protocol):
    async def get_charge_status(self, charge_id: str) -> str:
        ...


class ReservationManager:
    """Creates, renews and releases time-boxed seat reservations."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: ChargeStatusSource,
        ttl_seconds: int = 300,
    ):
        self.session = session
        self.gateway = gateway
        self.ttl = timedelta(seconds=ttl_seconds)

    async def reserve(self, user_id: UUID, category_id: UUID) -> Reservation:
        """
        Hold a seat in a category for a member.

        A failed or expired row for the same member is renewed in place.
        A processing row is checked against the gateway first.

        Raises:
            CapacityExceeded: Category is full
            DuplicateReservation: Member already holds or paid for a seat
            GatewayStatusAmbiguous: A previous charge is still in flight
        """
        category = await self._get_category(category_id)
        existing = await self._find_existing(user_id, category_id)
        now = utcnow()

        if existing is not None:
            if existing.status == ReservationStatus.PAID.value:
                raise DuplicateReservation()

            if existing.status == ReservationStatus.PROCESSING.value:
                # Deleted rows come back as None; anything else raised
                existing = await self._resolve_processing(existing)

            elif (
                existing.status == ReservationStatus.AWAITING_PAYMENT.value
                and existing.expires_at is not None
                and existing.expires_at > now
            ):
                minutes_left = math.ceil((existing.expires_at - now).total_seconds() / 60)
                raise DuplicateReservation(
                    message="You already have a reservation in progress for this category",
                    minutes_left=minutes_left,
                )

        if existing is not None:
            return await self.renew(existing, category)

        if category.max_capacity is not None:
            await self._check_capacity(category, exclude_user_id=user_id)

        max_capacity = category.max_capacity
        reservation = Reservation(
            user_id=user_id,
            registration_id=category.registration_id,
            category_id=category.id,
            status=ReservationStatus.AWAITING_PAYMENT.value,
            expires_at=now + self.ttl,
            amount=category.price,
        )
        self.session.add(reservation)

        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.warning(
                f"Reservation conflict for user {user_id} in category {category_id}, re-checking"
            )
            await self._raise_after_conflict(category_id, max_capacity, user_id)

        logger.info(
            f"Reserved seat {reservation.id} in category {category_id} for user {user_id} "
            f"until {reservation.expires_at.isoformat()}"
        )
        return reservation

    async def renew(
        self, reservation: Reservation, category: Optional[RegistrationCategory] = None
    ) -> Reservation:
        """
        Give a reusable reservation a fresh expiry and drop its charge linkage.

        A failed or lapsed row holds no seat, so it has to fit under the
        category's capacity again before it is revived.

        Raises:
            CapacityExceeded: Category filled up since the row lost its seat
        """
        user_id = reservation.user_id
        category_id = reservation.category_id
        if category is None:
            category = await self._get_category(category_id)
        max_capacity = category.max_capacity
        if max_capacity is not None:
            await self._check_capacity(category, exclude_user_id=user_id)

        reservation.status = ReservationStatus.AWAITING_PAYMENT.value
        reservation.expires_at = utcnow() + self.ttl
        reservation.external_charge_id = None
        reservation.payment_id = None

        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            await self._raise_after_conflict(category_id, max_capacity, user_id)

        logger.info(f"Renewed reservation {reservation.id} until {reservation.expires_at.isoformat()}")
        return reservation

    async def release(self, reservation_id: UUID) -> bool:
        """Delete a non-terminal reservation, freeing its seat immediately."""
        result = await self.session.execute(
            delete(Reservation).where(
                Reservation.id == reservation_id,
                Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            )
        )
        await self.session.commit()

        released = result.rowcount > 0
        if released:
            logger.info(f"Released reservation {reservation_id}")
        else:
            logger.info(f"Reservation {reservation_id} not released (missing or terminal)")
        return released

    async def mark_processing(
        self,
        reservation_id: UUID,
        charge_id: str,
        payment_id: Optional[UUID] = None,
    ) -> Optional[Reservation]:
        """Record that charge confirmation has started."""
        reservation = await self.session.get(Reservation, reservation_id)
        if not reservation or reservation.status not in ACTIVE_RESERVATION_STATUSES:
            logger.warning(f"Reservation {reservation_id} cannot move to processing")
            return None

        reservation.status = ReservationStatus.PROCESSING.value
        reservation.external_charge_id = charge_id
        if payment_id:
            reservation.payment_id = payment_id
        await self.session.commit()
        return reservation

    async def mark_paid(self, reservation_id: UUID, payment_id: Optional[UUID] = None) -> Optional[Reservation]:
        reservation = await self.session.get(Reservation, reservation_id)
        if not reservation:
            logger.warning(f"Reservation {reservation_id} not found when marking paid")
            return None

        reservation.status = ReservationStatus.PAID.value
        reservation.expires_at = None
        if payment_id:
            reservation.payment_id = payment_id
        await self.session.commit()

        logger.info(f"Reservation {reservation_id} paid")
        return reservation

    async def mark_failed(self, reservation_id: UUID) -> Optional[Reservation]:
        reservation = await self.session.get(Reservation, reservation_id)
        if not reservation:
            return None
        if reservation.status == ReservationStatus.PAID.value:
            logger.warning(f"Ignoring failure for paid reservation {reservation_id}")
            return reservation

        reservation.status = ReservationStatus.FAILED.value
        reservation.expires_at = None
        await self.session.commit()

        logger.info(f"Reservation {reservation_id} failed")
        return reservation

    async def expire_stale(self, older_than_seconds: int = 3600) -> int:
        """Mark awaiting-payment rows expired for longer than the cutoff as failed."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        result = await self.session.execute(
            update(Reservation)
            .where(
                Reservation.status == ReservationStatus.AWAITING_PAYMENT.value,
                Reservation.expires_at < cutoff,
            )
            .values(status=ReservationStatus.FAILED.value, expires_at=None)
        )
        await self.session.commit()

        if result.rowcount:
            logger.info(f"Expired {result.rowcount} stale reservations")
        return result.rowcount

    async def occupancy(self, category_id: UUID, exclude_user_id: Optional[UUID] = None) -> int:
        """Count paid seats plus live holds for a category."""
        live_hold = and_(
            Reservation.status.in_(ACTIVE_RESERVATION_STATUSES),
            Reservation.expires_at > utcnow(),
        )
        query = (
            select(func.count())
            .select_from(Reservation)
            .where(
                Reservation.category_id == category_id,
                or_(Reservation.status == ReservationStatus.PAID.value, live_hold),
            )
        )
        if exclude_user_id is not None:
            query = query.where(Reservation.user_id != exclude_user_id)

        result = await self.session.execute(query)
        return result.scalar_one()

    async def _check_capacity(self, category: RegistrationCategory, exclude_user_id: UUID):
        taken = await self.occupancy(category.id, exclude_user_id=exclude_user_id)
        if taken >= category.max_capacity:
            logger.info(
                f"Category {category.id} at capacity ({taken}/{category.max_capacity})"
            )
            raise CapacityExceeded(category.id, category.max_capacity)

    async def _raise_after_conflict(
        self, category_id: UUID, max_capacity: Optional[int], user_id: UUID
    ):
        """Decide between a duplicate and a lost race after an insert conflict."""
        existing = await self._find_existing(user_id, category_id)
        if existing is not None and existing.status in ACTIVE_RESERVATION_STATUSES + (
            ReservationStatus.PAID.value,
        ):
            raise DuplicateReservation()

        taken = await self.occupancy(category_id)
        logger.warning(
            f"Lost reservation race in category {category_id} ({taken}/{max_capacity})"
        )
        raise CapacityExceeded(category_id, max_capacity or taken)

    async def _resolve_processing(self, reservation: Reservation) -> Optional[Reservation]:
        """
        Reconcile a processing row with the gateway.

        Returns None when the row was deleted and the member may retry.
        """
        charge_id = reservation.external_charge_id
        if not charge_id:
            # Confirmation never reached the gateway
            await self._delete(reservation)
            return None

        try:
            gateway_status = await self.gateway.get_charge_status(charge_id)
        except Exception as e:
            logger.error(f"Could not fetch status of charge {charge_id}: {str(e)}", exc_info=True)
            raise GatewayStatusAmbiguous(charge_id, "unknown")

        if gateway_status == SUCCEEDED:
            reservation.status = ReservationStatus.PAID.value
            reservation.expires_at = None
            await self.session.commit()
            logger.warning(
                f"Charge {charge_id} already succeeded; repaired reservation {reservation.id} to paid"
            )
            raise DuplicateReservation(message="Payment already completed for this registration")

        if gateway_status in TERMINAL_FAILURE_STATUSES:
            logger.info(
                f"Charge {charge_id} is {gateway_status}; clearing reservation {reservation.id}"
            )
            await self._delete(reservation)
            return None

        raise GatewayStatusAmbiguous(charge_id, gateway_status)

    async def _delete(self, reservation: Reservation):
        await self.session.delete(reservation)
        await self.session.commit()

    async def _find_existing(self, user_id: UUID, category_id: UUID) -> Optional[Reservation]:
        result = await self.session.execute(
            select(Reservation).where(
                Reservation.user_id == user_id,
                Reservation.category_id == category_id,
                Reservation.status.in_(list(_STATUS_PRIORITY)),
            )
        )
        rows = result.scalars().all()
        if not rows:
            return None
        return min(
            rows,
            key=lambda row: (_STATUS_PRIORITY[row.status], -row.created_at.timestamp()),
        )

    async def _get_category(self, category_id: UUID) -> RegistrationCategory:
        category = await self.session.get(RegistrationCategory, category_id)
        if not category:
            raise HTTPException(status_code=404, detail="Registration category not found")
        return category
