"""Resolution of members to external ledger contacts."""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from services.registration_service.models import Member
from shared.database import utcnow

from .client import LedgerClient, LedgerContactRecord
from .models import LedgerContact

logger = logging.getLogger(__name__)


def contact_display_name(member: Member) -> str:
    """Ledger contact name: "First Last - member_number"."""
    if member.member_number:
        return f"{member.full_name} - {member.member_number}"
    return member.full_name


class ContactResolver:
    """Finds or creates the ledger contact for a member, with a local cache."""

    def __init__(self, session_factory, client: LedgerClient, tenant_id: str):
        self.session_factory = session_factory
        self.client = client
        self.tenant_id = tenant_id

    async def resolve(self, member: Member) -> str:
        """Return the external contact id for a member."""
        cached = await self._cached_contact_id(member)
        if cached:
            return cached

        display_name = contact_display_name(member)
        contact = await self._find_live(member, display_name)
        if contact is None:
            contact = await self.client.upsert_contact(
                self.tenant_id,
                name=display_name,
                email=member.email,
                first_name=member.first_name,
                last_name=member.last_name,
            )
            logger.info(f"Created ledger contact {contact.contact_id} for member {member.id}")

        await self._cache(member, contact)
        return contact.contact_id

    async def recover_archived(self, member: Member) -> str:
        """
        Replace an archived contact with a live one.

        Searches by exact display name, then by email. When neither finds a
        live contact, archived contacts holding the display name are renamed
        and a fresh contact is created.
        """
        display_name = contact_display_name(member)
        logger.warning(f"Ledger contact for member {member.id} is archived, recovering")

        contact = await self._find_live(member, display_name)
        if contact is None:
            archived = await self.client.list_contacts(
                self.tenant_id, name=display_name, include_archived=True
            )
            for stale in archived:
                if stale.is_archived and stale.name == display_name:
                    await self.client.upsert_contact(
                        self.tenant_id,
                        name=f"{display_name} - Archived",
                        contact_id=stale.contact_id,
                    )
                    logger.info(f"Renamed archived ledger contact {stale.contact_id}")

            contact = await self.client.upsert_contact(
                self.tenant_id,
                name=display_name,
                email=member.email,
                first_name=member.first_name,
                last_name=member.last_name,
            )

        await self._cache(member, contact)
        logger.info(f"Recovered ledger contact {contact.contact_id} for member {member.id}")
        return contact.contact_id

    async def _find_live(self, member: Member, display_name: str) -> Optional[LedgerContactRecord]:
        by_name = await self.client.list_contacts(self.tenant_id, name=display_name)
        for contact in by_name:
            if not contact.is_archived and contact.name == display_name:
                return contact

        if member.email:
            by_email = await self.client.list_contacts(self.tenant_id, email=member.email)
            for contact in by_email:
                if not contact.is_archived:
                    return contact

        return None

    async def _cached_contact_id(self, member: Member) -> Optional[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerContact.external_contact_id).where(
                    LedgerContact.user_id == member.id,
                    LedgerContact.tenant_id == self.tenant_id,
                    LedgerContact.contact_status == "ACTIVE",
                )
            )
            return result.scalar_one_or_none()

    async def _cache(self, member: Member, contact: LedgerContactRecord):
        async with self.session_factory() as session:
            result = await session.execute(
                select(LedgerContact).where(
                    LedgerContact.user_id == member.id,
                    LedgerContact.tenant_id == self.tenant_id,
                )
            )
            cached = result.scalar_one_or_none()
            if cached is None:
                cached = LedgerContact(user_id=member.id, tenant_id=self.tenant_id)
                session.add(cached)

            cached.external_contact_id = contact.contact_id
            cached.display_name = contact.name
            cached.email = contact.email
            cached.contact_status = contact.status.upper()
            cached.last_synced_at = utcnow()

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Ledger contact for member {member.id} cached concurrently")
