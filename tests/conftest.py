import json
import os
from typing import Any, Dict, Optional
from uuid import uuid4

# App modules build their settings at import time
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import httpx
import pytest
import pytest_asyncio

from services.ledger_service.client import LedgerClient
from services.payment_service.gateway import ChargeHandle
from services.registration_service.models import (
    DiscountCode,
    Member,
    Membership,
    RegistrationCategory,
)
from shared.config import Settings
from shared.database import Database

CRON_SECRET = "test-cron-secret"
LEDGER_URL = "https://ledger.test"
EMAIL_URL = "https://email.test"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        service_name="test",
        database_url_override=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        cron_secret=CRON_SECRET,
        ledger_api_url=LEDGER_URL,
        ledger_access_token="ledger-token",
        email_api_url=EMAIL_URL,
        email_api_key="email-key",
        invoice_concurrency=1,
        payment_concurrency=1,
        invoice_batch_delay=0,
        payment_batch_delay=0,
        min_delay_between_syncs=0,
    )


@pytest_asyncio.fixture
async def database(settings):
    """Fresh SQLite database file per test."""
    db = Database(settings.database_url)
    await db.create_tables()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def session(database):
    async with database.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def member(session) -> Member:
    member = Member(
        first_name="Jamie",
        last_name="Rivera",
        email="jamie@example.com",
        member_number="M-1001",
    )
    session.add(member)
    await session.commit()
    return member


@pytest_asyncio.fixture
async def other_member(session) -> Member:
    member = Member(
        first_name="Alex",
        last_name="Chen",
        email="alex@example.com",
        member_number="M-1002",
    )
    session.add(member)
    await session.commit()
    return member


@pytest_asyncio.fixture
async def category(session) -> RegistrationCategory:
    """Capacity-limited category with two seats."""
    category = RegistrationCategory(
        registration_id=uuid4(),
        registration_name="Spring League",
        name="Adult",
        season_name="2026",
        price=5000,
        max_capacity=2,
        accounting_code="REG-200",
    )
    session.add(category)
    await session.commit()
    return category


@pytest_asyncio.fixture
async def membership(session) -> Membership:
    membership = Membership(name="Full Member", price_monthly=1500, accounting_code="MEM-100")
    session.add(membership)
    await session.commit()
    return membership


@pytest_asyncio.fixture
async def discount_code(session) -> DiscountCode:
    code = DiscountCode(code="SPRING20", percentage=20, accounting_code="DISC-900")
    session.add(code)
    await session.commit()
    return code


@pytest_asyncio.fixture
async def free_code(session) -> DiscountCode:
    code = DiscountCode(code="COMP100", percentage=100, accounting_code="DISC-900")
    session.add(code)
    await session.commit()
    return code


class FakeGateway:
    """In-memory stand-in for the payment gateway."""

    def __init__(self):
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.statuses: Dict[str, str] = {}
        self.status_errors: Dict[str, Exception] = {}
        self.fail_create: Optional[Exception] = None
        # Outcome of off-session confirmations: a status string or an exception
        self.off_session_outcomes: list[Any] = []

    async def create_charge(
        self,
        amount,
        metadata,
        idempotency_key=None,
        customer_id=None,
        payment_method_id=None,
        save_payment_method=False,
    ) -> ChargeHandle:
        if "staging_record_id" not in metadata:
            raise ValueError("Charge metadata must carry staging_record_id")
        if self.fail_create:
            raise self.fail_create

        status = "requires_payment_method"
        if payment_method_id:
            outcome = self.off_session_outcomes.pop(0) if self.off_session_outcomes else "succeeded"
            if isinstance(outcome, Exception):
                raise outcome
            status = outcome

        charge_id = f"pi_test_{len(self.charges) + 1}"
        self.charges[charge_id] = {
            "id": charge_id,
            "amount": amount,
            "metadata": {key: str(value) for key, value in metadata.items() if value is not None},
            "idempotency_key": idempotency_key,
            "customer_id": customer_id,
            "payment_method_id": payment_method_id,
            "save_payment_method": save_payment_method,
        }
        self.statuses[charge_id] = status
        return ChargeHandle(id=charge_id, client_secret=f"{charge_id}_secret", status=status)

    async def create_customer(self, email, name, metadata) -> str:
        customer_id = f"cus_test_{len(self.customers) + 1}"
        self.customers[customer_id] = {"email": email, "name": name, "metadata": metadata}
        return customer_id

    async def get_charge_status(self, charge_id: str) -> str:
        if charge_id in self.status_errors:
            raise self.status_errors[charge_id]
        return self.statuses[charge_id]

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if signature != "valid-signature":
            raise ValueError("No signatures found matching the expected signature")
        return json.loads(payload)

    def event(self, event_type: str, charge_id: str, **intent: Any) -> Dict[str, Any]:
        charge = self.charges[charge_id]
        return {
            "id": f"evt_{charge_id}",
            "type": event_type,
            "data": {
                "object": {
                    "id": charge_id,
                    "amount": charge["amount"],
                    "metadata": charge["metadata"],
                    **intent,
                }
            },
        }


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


class FakeLedger:
    """In-memory external ledger served through httpx.MockTransport."""

    def __init__(self):
        self.tenants = [{"tenantId": "tenant-1", "tenantName": "Club Books"}]
        self.connection_valid = True
        self.contacts: Dict[str, Dict[str, Any]] = {}
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.payments: list[Dict[str, Any]] = []
        self.requests: list[tuple[str, str]] = []
        self.invoice_errors: list[tuple[int, Dict[str, Any]]] = []
        self.payment_errors: list[tuple[int, Dict[str, Any]]] = []

    def calls(self, method: str, path_prefix: str) -> int:
        return sum(
            1 for m, path in self.requests if m == method and path.startswith(path_prefix)
        )

    def add_contact(self, name: str, email: Optional[str] = None, status: str = "ACTIVE") -> str:
        contact_id = f"contact-{len(self.contacts) + 1}"
        self.contacts[contact_id] = {
            "contactID": contact_id,
            "name": name,
            "emailAddress": email,
            "contactStatus": status,
        }
        return contact_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        body = json.loads(request.content) if request.content else None

        if path == "/connections":
            return httpx.Response(200, json=self.tenants)

        if path == "/organisation":
            if not self.connection_valid:
                return httpx.Response(401, json={"message": "Token expired"})
            return httpx.Response(200, json={"organisations": [{"name": "Club Books"}]})

        if path == "/contacts" and request.method == "GET":
            return self._search_contacts(request)

        if path == "/contacts" and request.method == "POST":
            contact = body["contacts"][0]
            contact_id = contact.get("contactID")
            if contact_id:
                self.contacts[contact_id]["name"] = contact["name"]
            else:
                contact_id = self.add_contact(contact["name"], contact.get("emailAddress"))
            return httpx.Response(200, json={"contacts": [self.contacts[contact_id]]})

        if path == "/invoices" and request.method == "PUT":
            if self.invoice_errors:
                status_code, error = self.invoice_errors.pop(0)
                return httpx.Response(status_code, json=error)
            return self._create_invoice(body["invoices"][0])

        if path.startswith("/invoices/") and request.method == "GET":
            invoice = self.invoices.get(path.rsplit("/", 1)[-1])
            if not invoice:
                return httpx.Response(404, json={"message": "Invoice not found"})
            return httpx.Response(200, json={"invoices": [invoice]})

        if path == "/payments" and request.method == "PUT":
            if self.payment_errors:
                status_code, error = self.payment_errors.pop(0)
                return httpx.Response(status_code, json=error)
            payment = body["payments"][0]
            invoice = self.invoices[payment["invoice"]["invoiceID"]]
            invoice["amountDue"] = round(invoice["amountDue"] - payment["amount"], 2)
            payment_id = f"pay-{len(self.payments) + 1}"
            self.payments.append({**payment, "paymentID": payment_id})
            return httpx.Response(200, json={"payments": [{"paymentID": payment_id}]})

        return httpx.Response(404, json={"message": f"No route for {request.method} {path}"})

    def _search_contacts(self, request: httpx.Request) -> httpx.Response:
        name = request.url.params.get("name")
        email = request.url.params.get("email")
        include_archived = request.url.params.get("includeArchived") == "true"

        matches = []
        for contact in self.contacts.values():
            if contact["contactStatus"] == "ARCHIVED" and not include_archived:
                continue
            if name and contact["name"] != name:
                continue
            if email and contact["emailAddress"] != email:
                continue
            matches.append(contact)
        return httpx.Response(200, json={"contacts": matches})

    def _create_invoice(self, invoice: Dict[str, Any]) -> httpx.Response:
        contact = self.contacts.get(invoice["contact"]["contactID"])
        if contact and contact["contactStatus"] == "ARCHIVED":
            return httpx.Response(
                400,
                json={"validationErrors": [{"message": "The contact has been archived"}]},
            )

        number = len(self.invoices) + 1
        invoice_id = f"inv-{number}"
        total = round(
            sum(item["quantity"] * item["unitAmount"] for item in invoice["lineItems"]), 2
        )
        stored = {
            **invoice,
            "invoiceID": invoice_id,
            "invoiceNumber": f"INV-{number:04d}",
            "amountDue": total,
        }
        self.invoices[invoice_id] = stored
        return httpx.Response(200, json={"invoices": [stored]})


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()


@pytest_asyncio.fixture
async def ledger_client(fake_ledger):
    client = LedgerClient(
        LEDGER_URL,
        "ledger-token",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_ledger.handler)),
    )
    yield client
    await client.close()
