from uuid import uuid4

import pytest
from fastapi import HTTPException
from sqlalchemy import func, select

from services.ledger_service.models import InvoiceStatus, SyncStatus
from services.notification_service.models import EmailEventType, EmailLog
from services.payment_service.checkout import (
    CheckoutService,
    MembershipCheckoutRequest,
    RegistrationCheckoutRequest,
)
from services.payment_service.models import Payment, PaymentStatus
from services.registration_service.models import (
    DiscountUsage,
    RegistrationCategory,
    Reservation,
    ReservationStatus,
)
from shared.exceptions import CapacityExceeded, StagingCreationFailed
from shared.purchases import PaymentPlanTerms


@pytest.fixture
def service(session, gateway, settings):
    return CheckoutService(session, gateway, settings)


async def count(session, model, *criteria):
    result = await session.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_paid_registration_stages_before_charging(session, service, gateway, member, category):
    result = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
    )

    assert result.status == "requires_payment"
    assert result.amount == 5000
    assert result.client_secret == f"{result.charge_id}_secret"

    charge = gateway.charges[result.charge_id]
    assert charge["amount"] == 5000
    assert charge["metadata"]["staging_record_id"] == str(result.staging_record_id)
    assert charge["metadata"]["payment_id"] == str(result.payment_id)
    assert charge["metadata"]["reservation_id"] == str(result.reservation_id)
    assert charge["idempotency_key"] == f"checkout-{result.payment_id}"

    payment = await session.get(Payment, result.payment_id)
    assert payment.status == PaymentStatus.PENDING.value
    assert payment.gateway_charge_id == result.charge_id
    assert payment.staging_record_id == result.staging_record_id

    reservation = await session.get(Reservation, result.reservation_id)
    assert reservation.status == ReservationStatus.PROCESSING.value
    assert reservation.external_charge_id == result.charge_id

    record = await service.staging.get_staging_record(result.staging_record_id)
    assert record.invoice.sync_status == SyncStatus.STAGED.value
    assert record.invoice.invoice_status == InvoiceStatus.DRAFT.value
    assert record.invoice.staging_metadata["charge_id"] == result.charge_id


@pytest.mark.asyncio
async def test_discount_reduces_charge(service, gateway, member, category, discount_code):
    result = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id, discount_code="spring20")
    )

    assert result.amount == 4000
    assert gateway.charges[result.charge_id]["amount"] == 4000

    record = await service.staging.get_staging_record(result.staging_record_id)
    assert record.invoice.discount_amount == 1000
    assert record.payment_shell.amount_paid == 4000


@pytest.mark.asyncio
async def test_invalid_discount_code_rejected_before_reserving(session, service, member, category):
    with pytest.raises(HTTPException) as exc_info:
        await service.start_registration_checkout(
            RegistrationCheckoutRequest(user_id=member.id, category_id=category.id, discount_code="NOPE")
        )

    assert exc_info.value.status_code == 400
    assert await count(session, Reservation) == 0


@pytest.mark.asyncio
async def test_free_registration_completes_inline(session, service, gateway, member, category, free_code):
    result = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id, discount_code="COMP100")
    )

    assert result.status == "completed"
    assert result.amount == 0
    assert gateway.charges == {}

    payment = await session.get(Payment, result.payment_id)
    assert payment.status == PaymentStatus.COMPLETED.value

    reservation = await session.get(Reservation, result.reservation_id)
    assert reservation.status == ReservationStatus.PAID.value

    record = await service.staging.get_staging_record(result.staging_record_id)
    assert record.invoice.sync_status == SyncStatus.PENDING.value
    assert record.invoice.invoice_status == InvoiceStatus.AUTHORISED.value
    assert record.invoice.payment_id == result.payment_id
    assert record.payments == []

    assert await count(session, EmailLog) == 1
    assert await count(session, DiscountUsage, DiscountUsage.user_id == member.id) == 1


@pytest.mark.asyncio
async def test_staging_failure_creates_no_charge(session, service, gateway, member, category, monkeypatch):
    async def no_staging(*args, **kwargs):
        return None

    monkeypatch.setattr(service.staging, "create_immediate_staging", no_staging)

    with pytest.raises(StagingCreationFailed) as exc_info:
        await service.start_registration_checkout(
            RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
        )

    assert exc_info.value.status_code == 500
    assert gateway.charges == {}
    assert await count(session, Reservation) == 0

    payment = (await session.execute(select(Payment))).scalar_one()
    assert payment.status == PaymentStatus.FAILED.value


@pytest.mark.asyncio
async def test_gateway_failure_releases_reservation(session, service, gateway, member, category):
    gateway.fail_create = RuntimeError("card network unavailable")

    with pytest.raises(HTTPException) as exc_info:
        await service.start_registration_checkout(
            RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
        )

    assert exc_info.value.status_code == 502
    assert await count(session, Reservation) == 0
    assert await count(session, Payment, Payment.status == PaymentStatus.FAILED.value) == 1


@pytest.mark.asyncio
async def test_full_category_creates_no_payment(session, service, member, other_member, category):
    category.max_capacity = 1
    await session.commit()
    await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=other_member.id, category_id=category.id)
    )

    with pytest.raises(CapacityExceeded):
        await service.start_registration_checkout(
            RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
        )

    assert await count(session, Payment, Payment.user_id == member.id) == 0


@pytest.mark.asyncio
async def test_unlimited_category_needs_no_reservation(session, service, member):
    category = RegistrationCategory(
        registration_id=uuid4(),
        registration_name="Open Skate",
        name="Drop-in",
        price=1200,
        max_capacity=None,
    )
    session.add(category)
    await session.commit()

    result = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
    )

    assert result.reservation_id is None
    assert await count(session, Reservation) == 0


@pytest.mark.asyncio
async def test_webhook_success_completes_purchase(session, service, gateway, member, category):
    started = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
    )

    result = await service.handle_gateway_event(
        gateway.event("payment_intent.succeeded", started.charge_id, status="succeeded")
    )

    assert result.staging_record_id == started.staging_record_id
    assert result.staging_transitioned

    payment = await session.get(Payment, started.payment_id)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.completed_at is not None

    reservation = await session.get(Reservation, started.reservation_id)
    assert reservation.status == ReservationStatus.PAID.value

    record = await service.staging.get_staging_record(started.staging_record_id)
    assert record.invoice.sync_status == SyncStatus.PENDING.value
    assert record.invoice.invoice_status == InvoiceStatus.AUTHORISED.value
    assert record.payment_shell.sync_status == SyncStatus.PENDING.value
    assert record.payment_shell.payment_id == started.payment_id

    email = (await session.execute(select(EmailLog))).scalar_one()
    assert email.event_type == EmailEventType.REGISTRATION_COMPLETED.value


@pytest.mark.asyncio
async def test_webhook_replay_is_ignored(session, service, gateway, member, category):
    started = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
    )
    event = gateway.event("payment_intent.succeeded", started.charge_id, status="succeeded")

    assert await service.handle_gateway_event(event) is not None
    assert await service.handle_gateway_event(event) is None
    assert await count(session, EmailLog) == 1


@pytest.mark.asyncio
async def test_webhook_failure_frees_reservation_for_retry(session, service, gateway, member, category):
    started = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
    )

    result = await service.handle_gateway_event(
        gateway.event(
            "payment_intent.payment_failed",
            started.charge_id,
            status="requires_payment_method",
            last_payment_error={"message": "Your card was declined."},
        )
    )

    assert result.email_staged
    payment = await session.get(Payment, started.payment_id)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason == "Your card was declined."

    reservation = await session.get(Reservation, started.reservation_id)
    assert reservation.status == ReservationStatus.FAILED.value

    record = await service.staging.get_staging_record(started.staging_record_id)
    assert record.invoice.sync_status == SyncStatus.STAGED.value

    retry = await service.start_registration_checkout(
        RegistrationCheckoutRequest(user_id=member.id, category_id=category.id)
    )
    assert retry.reservation_id == started.reservation_id
    assert retry.staging_record_id != started.staging_record_id


@pytest.mark.asyncio
async def test_unhandled_event_types_are_ignored(service):
    event = {"type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
    assert await service.handle_gateway_event(event) is None


@pytest.mark.asyncio
async def test_membership_checkout(session, service, gateway, member, membership):
    result = await service.start_membership_checkout(
        MembershipCheckoutRequest(user_id=member.id, membership_id=membership.id, duration_months=12)
    )

    assert result.reservation_id is None
    assert result.amount == 18000
    metadata = gateway.charges[result.charge_id]["metadata"]
    assert metadata["product_type"] == "membership"
    assert "reservation_id" not in metadata

    record = await service.staging.get_staging_record(result.staging_record_id)
    assert record.line_items[0].description == "Membership: Full Member - 12 months"
    assert record.line_items[0].account_code == "MEM-100"


@pytest.mark.asyncio
async def test_membership_payment_plan_charges_first_installment(session, service, gateway, member, membership):
    started = await service.start_membership_checkout(
        MembershipCheckoutRequest(
            user_id=member.id,
            membership_id=membership.id,
            duration_months=12,
            payment_plan=PaymentPlanTerms(installments=3),
        )
    )

    assert started.amount == 6000
    metadata = gateway.charges[started.charge_id]["metadata"]
    assert metadata["is_payment_plan"] == "true"
    assert metadata["installment_number"] == "1"

    await service.handle_gateway_event(
        gateway.event("payment_intent.succeeded", started.charge_id, status="succeeded")
    )

    record = await service.staging.get_staging_record(started.staging_record_id)
    assert record.invoice.sync_status == SyncStatus.PENDING.value
    assert record.installment(1).sync_status == SyncStatus.PENDING.value
    assert record.installment(1).payment_id == started.payment_id
    assert record.installment(2).sync_status == SyncStatus.STAGED.value

    email = (await session.execute(select(EmailLog))).scalar_one()
    assert email.event_type == EmailEventType.MEMBERSHIP_PURCHASED.value
