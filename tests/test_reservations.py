from datetime import timedelta

import pytest
from sqlalchemy import func, select

from services.registration_service.models import Member, Reservation, ReservationStatus
from services.registration_service.reservations import ReservationManager
from shared.database import utcnow
from shared.exceptions import CapacityExceeded, DuplicateReservation, GatewayStatusAmbiguous


@pytest.fixture
def manager(session, gateway):
    return ReservationManager(session, gateway, ttl_seconds=300)


async def count_reservations(session, **filters):
    query = select(func.count()).select_from(Reservation)
    for column, value in filters.items():
        query = query.where(getattr(Reservation, column) == value)
    result = await session.execute(query)
    return result.scalar_one()


@pytest.mark.asyncio
async def test_reserve_holds_a_seat(manager, member, category):
    reservation = await manager.reserve(member.id, category.id)

    assert reservation.status == ReservationStatus.AWAITING_PAYMENT.value
    assert reservation.amount == category.price
    assert reservation.expires_at > utcnow() + timedelta(seconds=290)
    assert await manager.occupancy(category.id) == 1


@pytest.mark.asyncio
async def test_live_reservation_is_a_duplicate(manager, member, category):
    await manager.reserve(member.id, category.id)

    with pytest.raises(DuplicateReservation) as exc_info:
        await manager.reserve(member.id, category.id)

    assert exc_info.value.status_code == 409
    assert exc_info.value.minutes_left == 5


@pytest.mark.asyncio
async def test_paid_reservation_is_a_duplicate(manager, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_paid(reservation.id)

    with pytest.raises(DuplicateReservation):
        await manager.reserve(member.id, category.id)


@pytest.mark.asyncio
async def test_capacity_exceeded_offers_waitlist(session, manager, member, other_member, category):
    category.max_capacity = 1
    await session.commit()
    await manager.reserve(other_member.id, category.id)

    with pytest.raises(CapacityExceeded) as exc_info:
        await manager.reserve(member.id, category.id)

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["should_offer_waitlist"] is True


@pytest.mark.asyncio
async def test_expired_hold_frees_capacity_and_is_renewed_in_place(
    session, manager, member, other_member, category
):
    category.max_capacity = 1
    await session.commit()

    first = await manager.reserve(member.id, category.id)
    first.expires_at = utcnow() - timedelta(seconds=1)
    await session.commit()

    # The lapsed hold no longer counts against capacity
    taken_by_other = await manager.reserve(other_member.id, category.id)
    assert taken_by_other.status == ReservationStatus.AWAITING_PAYMENT.value

    with pytest.raises(CapacityExceeded):
        await manager.reserve(member.id, category.id)


@pytest.mark.asyncio
async def test_failed_reservation_is_reused(manager, session, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_failed(reservation.id)

    renewed = await manager.reserve(member.id, category.id)

    assert renewed.id == reservation.id
    assert renewed.status == ReservationStatus.AWAITING_PAYMENT.value
    assert renewed.external_charge_id is None
    assert await count_reservations(session, user_id=member.id) == 1


@pytest.mark.asyncio
async def test_processing_with_succeeded_charge_is_repaired_to_paid(manager, gateway, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_processing(reservation.id, "pi_done")
    gateway.statuses["pi_done"] = "succeeded"

    with pytest.raises(DuplicateReservation):
        await manager.reserve(member.id, category.id)

    assert reservation.status == ReservationStatus.PAID.value
    assert reservation.expires_at is None


@pytest.mark.asyncio
async def test_processing_with_failed_charge_is_cleared(manager, session, gateway, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_processing(reservation.id, "pi_declined")
    gateway.statuses["pi_declined"] = "canceled"

    fresh = await manager.reserve(member.id, category.id)

    assert fresh.id != reservation.id
    assert fresh.status == ReservationStatus.AWAITING_PAYMENT.value
    assert await count_reservations(session, user_id=member.id) == 1


@pytest.mark.asyncio
async def test_processing_with_in_flight_charge_is_ambiguous(manager, gateway, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_processing(reservation.id, "pi_pending")
    gateway.statuses["pi_pending"] = "processing"

    with pytest.raises(GatewayStatusAmbiguous) as exc_info:
        await manager.reserve(member.id, category.id)

    assert exc_info.value.gateway_status == "processing"


@pytest.mark.asyncio
async def test_gateway_error_is_ambiguous(manager, gateway, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_processing(reservation.id, "pi_unreachable")
    gateway.status_errors["pi_unreachable"] = ConnectionError("gateway down")

    with pytest.raises(GatewayStatusAmbiguous) as exc_info:
        await manager.reserve(member.id, category.id)

    assert exc_info.value.gateway_status == "unknown"


@pytest.mark.asyncio
async def test_release_frees_the_seat(manager, member, category):
    reservation = await manager.reserve(member.id, category.id)

    assert await manager.release(reservation.id) is True
    assert await manager.occupancy(category.id) == 0
    assert await manager.release(reservation.id) is False


@pytest.mark.asyncio
async def test_release_keeps_paid_reservations(manager, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_paid(reservation.id)

    assert await manager.release(reservation.id) is False
    assert await manager.occupancy(category.id) == 1


@pytest.mark.asyncio
async def test_mark_failed_ignores_paid(manager, member, category):
    reservation = await manager.reserve(member.id, category.id)
    await manager.mark_paid(reservation.id)

    result = await manager.mark_failed(reservation.id)
    assert result.status == ReservationStatus.PAID.value


@pytest.mark.asyncio
async def test_expire_stale_fails_long_lapsed_holds(manager, session, member, other_member, category):
    stale = await manager.reserve(member.id, category.id)
    stale.expires_at = utcnow() - timedelta(hours=2)
    live = await manager.reserve(other_member.id, category.id)
    await session.commit()

    expired = await manager.expire_stale(older_than_seconds=3600)

    assert expired == 1
    await session.refresh(stale)
    await session.refresh(live)
    assert stale.status == ReservationStatus.FAILED.value
    assert live.status == ReservationStatus.AWAITING_PAYMENT.value


@pytest.mark.asyncio
async def test_renewing_a_failed_row_respects_capacity(manager, session, member, other_member, category):
    failed = await manager.reserve(member.id, category.id)
    await manager.mark_failed(failed.id)

    third = Member(first_name="Sam", last_name="Okafor", email="sam@example.com")
    session.add(third)
    await session.commit()
    await manager.reserve(other_member.id, category.id)
    await manager.reserve(third.id, category.id)

    with pytest.raises(CapacityExceeded):
        await manager.renew(failed)

    assert await manager.occupancy(category.id) == category.max_capacity
    await session.refresh(failed)
    assert failed.status == ReservationStatus.FAILED.value


@pytest.mark.asyncio
async def test_renewing_with_a_free_seat_restores_the_hold(manager, session, member, other_member, category):
    failed = await manager.reserve(member.id, category.id)
    await manager.mark_failed(failed.id)
    await manager.reserve(other_member.id, category.id)

    renewed = await manager.renew(failed)

    assert renewed.status == ReservationStatus.AWAITING_PAYMENT.value
    assert await manager.occupancy(category.id) == 2
