import json
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from services.notification_service.dispatcher import EmailDispatcher, EmailProviderClient
from services.notification_service.models import EmailEventType, EmailLog, EmailStatus
from services.notification_service.staging import EmailStager
from shared.database import utcnow
from shared.events import CompletionMetadata, EventType, GatewayPaymentEvent

EMAIL_URL = "https://email.test"


class FakeProvider:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(500, json={"message": "provider down"})
        self.sent.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True})


def dispatcher_for(database, provider, max_retries=3):
    client = EmailProviderClient(
        EMAIL_URL,
        "email-key",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)),
    )
    return EmailDispatcher(database.session_factory, client, max_retries=max_retries)


def completion_event(user_id, staging_record_id=None):
    return GatewayPaymentEvent(
        event_type=EventType.USER_MEMBERSHIPS,
        user_id=user_id,
        payment_id=uuid4(),
        amount=18000,
        metadata=CompletionMetadata(charge_id="pi_mem", staging_record_id=staging_record_id or uuid4()),
    )


async def all_emails(database):
    async with database.session_factory() as session:
        return (await session.execute(select(EmailLog))).scalars().all()


@pytest.mark.asyncio
async def test_confirmation_is_staged_once_per_outcome(session, settings, member):
    stager = EmailStager(session, settings)
    event = completion_event(member.id)

    assert await stager.stage_confirmation_email(event, {"description": "Membership: Full Member - 12 months"})
    assert await stager.stage_confirmation_email(event)

    emails = (await session.execute(select(EmailLog))).scalars().all()
    assert len(emails) == 1
    assert emails[0].event_type == EmailEventType.MEMBERSHIP_PURCHASED.value
    assert emails[0].template_id == settings.email_template_membership_purchased
    assert emails[0].email_data["first_name"] == "Jamie"
    assert emails[0].email_data["description"] == "Membership: Full Member - 12 months"


@pytest.mark.asyncio
async def test_unknown_member_is_not_staged(session, settings):
    stager = EmailStager(session, settings)
    assert await stager.stage_confirmation_email(completion_event(uuid4())) is False


@pytest.mark.asyncio
async def test_dispatch_sends_and_marks_sent(database, session, settings, member):
    await EmailStager(session, settings).stage_confirmation_email(completion_event(member.id))
    provider = FakeProvider()

    results = await dispatcher_for(database, provider).dispatch_pending()

    assert results == {"processed": 1, "successful": 1, "failed": 0}
    assert provider.sent[0]["email"] == "jamie@example.com"
    assert provider.sent[0]["transactionalId"] == settings.email_template_membership_purchased

    emails = await all_emails(database)
    assert emails[0].status == EmailStatus.SENT.value
    assert emails[0].sent_at is not None

    # Sent emails are not dispatched again
    again = await dispatcher_for(database, provider).dispatch_pending()
    assert again["processed"] == 0
    assert len(provider.sent) == 1


@pytest.mark.asyncio
async def test_failures_retry_then_fail(database, session, settings, member):
    await EmailStager(session, settings).stage_confirmation_email(completion_event(member.id))
    dispatcher = dispatcher_for(database, FakeProvider(fail=True), max_retries=2)

    first = await dispatcher.dispatch_pending()
    assert first["failed"] == 1
    emails = await all_emails(database)
    assert emails[0].status == EmailStatus.PENDING.value
    assert emails[0].retry_count == 1

    await dispatcher.dispatch_pending()
    emails = await all_emails(database)
    assert emails[0].status == EmailStatus.FAILED.value
    assert emails[0].retry_count == 2


@pytest.mark.asyncio
async def test_retry_failed_emails_requeues(database, session, settings, member):
    await EmailStager(session, settings).stage_confirmation_email(completion_event(member.id))
    await dispatcher_for(database, FakeProvider(fail=True), max_retries=1).dispatch_pending()

    provider = FakeProvider()
    dispatcher = dispatcher_for(database, provider)
    assert await dispatcher.retry_failed_emails() == 1

    results = await dispatcher.dispatch_pending()
    assert results["successful"] == 1
    assert (await all_emails(database))[0].status == EmailStatus.SENT.value


async def claim_row(database, claimed_at):
    async with database.session_factory() as session:
        email_log = (await session.execute(select(EmailLog))).scalar_one()
        email_log.status = EmailStatus.SENDING.value
        email_log.claimed_at = claimed_at
        await session.commit()


@pytest.mark.asyncio
async def test_rows_claimed_by_another_pass_are_not_sent_twice(database, session, settings, member):
    await EmailStager(session, settings).stage_confirmation_email(completion_event(member.id))
    await claim_row(database, utcnow())
    provider = FakeProvider()

    results = await dispatcher_for(database, provider).dispatch_pending()

    assert results["processed"] == 0
    assert provider.sent == []
    assert (await all_emails(database))[0].status == EmailStatus.SENDING.value


@pytest.mark.asyncio
async def test_stale_claims_are_released_and_sent(database, session, settings, member):
    await EmailStager(session, settings).stage_confirmation_email(completion_event(member.id))
    await claim_row(database, utcnow() - timedelta(hours=1))
    provider = FakeProvider()

    results = await dispatcher_for(database, provider).dispatch_pending()

    assert results == {"processed": 1, "successful": 1, "failed": 0}
    email = (await all_emails(database))[0]
    assert email.status == EmailStatus.SENT.value
    assert email.claimed_at is None
