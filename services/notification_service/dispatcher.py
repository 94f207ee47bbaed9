"""Dispatch pass that sends staged emails through the email provider."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
from sqlalchemy import select, update

from shared.database import utcnow

from .models import EmailLog, EmailStatus

logger = logging.getLogger(__name__)


@dataclass
class ClaimedEmail:
    """Snapshot of a row claimed for sending."""
    id: UUID
    event_type: str
    template_id: Optional[str]
    email_address: str
    email_data: Dict[str, Any]
    retry_count: int


class EmailProviderClient:
    """Transactional email provider API client."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def send_transactional(
        self, template_id: str, email: str, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Send one templated email. Raises httpx.HTTPError on failure."""
        response = await self.http_client.post(
            f"{self.base_url}/transactional",
            json={"transactionalId": template_id, "email": email, "dataVariables": data},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    async def close(self):
        await self.http_client.aclose()


class EmailDispatcher:
    """Sends pending email logs and records the outcome on each row."""

    def __init__(
        self,
        session_factory,
        provider: EmailProviderClient,
        poll_interval: int = 60,
        batch_size: int = 100,
        max_retries: int = 3,
        stale_claim_seconds: int = 600,
    ):
        """
        Initialize email dispatcher.

        Args:
            session_factory: Async session factory for database access
            provider: Email provider client
            poll_interval: Seconds to wait between polls when running in-process
            batch_size: Number of emails to send per pass
            max_retries: Send attempts before an email is marked failed
            stale_claim_seconds: Age after which a sending claim is released
        """
        self.session_factory = session_factory
        self.provider = provider
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.stale_claim_seconds = stale_claim_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start polling for staged emails."""
        if self._running:
            logger.warning("Email dispatcher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_and_dispatch())
        logger.info("Email dispatcher started")

    async def stop(self):
        """Stop polling."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Email dispatcher stopped")

    async def _poll_and_dispatch(self):
        while self._running:
            try:
                await self.dispatch_pending()
            except Exception as e:
                logger.error(f"Error in email dispatcher: {str(e)}", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    async def dispatch_pending(self) -> Dict[str, int]:
        """
        Send up to batch_size pending emails, oldest first.

        Rows are claimed as sending and committed before any provider call,
        so no row lock is held while the provider is slow.
        """
        results = {"processed": 0, "successful": 0, "failed": 0}

        await self._release_stale_claims()
        claimed = await self._claim_pending()
        if not claimed:
            return results

        logger.info(f"Dispatching {len(claimed)} staged emails")
        results["processed"] = len(claimed)

        for email in claimed:
            try:
                await self.provider.send_transactional(
                    template_id=email.template_id,
                    email=email.email_address,
                    data=email.email_data,
                )
            except Exception as e:
                logger.error(f"Failed to send email {email.id}: {str(e)}", exc_info=True)
                await self._record_failure(email, e)
                results["failed"] += 1
                continue

            await self._record_sent(email)
            results["successful"] += 1
            logger.info(f"Sent {email.event_type} email {email.id}")

        return results

    async def _claim_pending(self) -> list[ClaimedEmail]:
        async with self.session_factory() as session:
            query = (
                select(EmailLog)
                .where(EmailLog.status == EmailStatus.PENDING.value)
                .order_by(EmailLog.created_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            result = await session.execute(query)
            email_logs = result.scalars().all()

            claimed = []
            now = utcnow()
            for email_log in email_logs:
                email_log.status = EmailStatus.SENDING.value
                email_log.claimed_at = now
                claimed.append(
                    ClaimedEmail(
                        id=email_log.id,
                        event_type=email_log.event_type,
                        template_id=email_log.template_id,
                        email_address=email_log.email_address,
                        email_data=dict(email_log.email_data or {}),
                        retry_count=email_log.retry_count or 0,
                    )
                )
            await session.commit()

        return claimed

    async def _record_sent(self, email: ClaimedEmail):
        async with self.session_factory() as session:
            await session.execute(
                update(EmailLog)
                .where(EmailLog.id == email.id)
                .values(
                    status=EmailStatus.SENT.value,
                    sent_at=utcnow(),
                    error_message=None,
                    claimed_at=None,
                )
            )
            await session.commit()

    async def _record_failure(self, email: ClaimedEmail, error: Exception):
        retry_count = email.retry_count + 1
        if retry_count >= self.max_retries:
            status = EmailStatus.FAILED.value
            logger.error(f"Email {email.id} exceeded max retries. Marked as failed.")
        else:
            status = EmailStatus.PENDING.value

        async with self.session_factory() as session:
            await session.execute(
                update(EmailLog)
                .where(EmailLog.id == email.id)
                .values(
                    status=status,
                    retry_count=retry_count,
                    error_message=str(error),
                    claimed_at=None,
                )
            )
            await session.commit()

    async def _release_stale_claims(self):
        """Return rows left in sending by a crashed pass to the queue."""
        cutoff = utcnow() - timedelta(seconds=self.stale_claim_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmailLog)
                .where(
                    EmailLog.status == EmailStatus.SENDING.value,
                    EmailLog.claimed_at < cutoff,
                )
                .values(status=EmailStatus.PENDING.value, claimed_at=None)
            )
            await session.commit()

        if result.rowcount:
            logger.warning(f"Released {result.rowcount} stale email claims")

    async def retry_failed_emails(self, limit: int = 100) -> int:
        """
        Reset failed emails so the next pass sends them again.

        Args:
            limit: Maximum number of emails to reset
        """
        async with self.session_factory() as session:
            query = (
                select(EmailLog)
                .where(EmailLog.status == EmailStatus.FAILED.value)
                .order_by(EmailLog.created_at)
                .limit(limit)
            )

            result = await session.execute(query)
            email_logs = result.scalars().all()

            for email_log in email_logs:
                email_log.status = EmailStatus.PENDING.value
                email_log.retry_count = 0
                email_log.error_message = None

            await session.commit()

            logger.info(f"Reset {len(email_logs)} failed emails for retry")
            return len(email_logs)
