"""HTTP client for the external accounting ledger."""
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERNS = ("rate limit", "429", "too many requests", "quota exceeded")


class LedgerError(Exception):
    """Base error for external ledger calls."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_data = response_data


class LedgerUnavailable(LedgerError):
    """Connectivity, auth or server error. Rows stay pending."""


class LedgerRateLimited(LedgerError):
    """API quota hit. Rows stay pending."""


class LedgerValidationError(LedgerError):
    """Request rejected by the ledger. Rows are marked failed."""


class ArchivedContactError(LedgerValidationError):
    """Invoice rejected because its contact is archived."""


def is_rate_limit_error(status_code: Optional[int], message: str) -> bool:
    if status_code == 429:
        return True
    lowered = (message or "").lower()
    return any(pattern in lowered for pattern in RATE_LIMIT_PATTERNS)


def classify_error(
    status_code: Optional[int],
    message: str,
    response_data: Optional[Dict[str, Any]] = None,
) -> LedgerError:
    """Map a failed ledger response onto the transient/permanent error classes."""
    if is_rate_limit_error(status_code, message):
        return LedgerRateLimited(message, status_code, response_data)
    if status_code in (400, 404, 409, 422):
        if "archived" in (message or "").lower():
            return ArchivedContactError(message, status_code, response_data)
        return LedgerValidationError(message, status_code, response_data)
    return LedgerUnavailable(message, status_code, response_data)


class LedgerTenant(BaseModel):
    tenant_id: str
    tenant_name: Optional[str] = None


class LedgerContactRecord(BaseModel):
    contact_id: str
    name: str
    email: Optional[str] = None
    status: str = "ACTIVE"

    @property
    def is_archived(self) -> bool:
        return self.status.upper() == "ARCHIVED"


class LedgerInvoiceRecord(BaseModel):
    invoice_id: str
    invoice_number: Optional[str] = None
    status: Optional[str] = None
    amount_due: float = 0.0


class LedgerClient:
    """Async client for the ledger's contacts, invoices and payments API."""

    def __init__(
        self,
        base_url: str,
        access_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def close(self):
        await self.http_client.aclose()

    async def list_connections(self) -> list[LedgerTenant]:
        """List tenants the access token is connected to."""
        data = await self._request("GET", "/connections")
        connections = data if isinstance(data, list) else data.get("connections", [])
        return [
            LedgerTenant(tenant_id=item["tenantId"], tenant_name=item.get("tenantName"))
            for item in connections
        ]

    async def validate_connection(self, tenant_id: str) -> bool:
        """Check the tenant answers with the current token."""
        try:
            await self._request("GET", "/organisation", tenant_id=tenant_id)
            return True
        except LedgerError as e:
            logger.warning(f"Ledger tenant {tenant_id} failed validation: {e.message}")
            return False

    async def list_contacts(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        include_archived: bool = False,
    ) -> list[LedgerContactRecord]:
        params: Dict[str, Any] = {"includeArchived": str(include_archived).lower()}
        if name:
            params["name"] = name
        if email:
            params["email"] = email

        data = await self._request("GET", "/contacts", tenant_id=tenant_id, params=params)
        return [self._contact(item) for item in data.get("contacts", [])]

    async def upsert_contact(
        self,
        tenant_id: str,
        name: str,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> LedgerContactRecord:
        """Create a contact, or update it when contact_id is given."""
        contact: Dict[str, Any] = {"name": name}
        if contact_id:
            contact["contactID"] = contact_id
        if email:
            contact["emailAddress"] = email
        if first_name:
            contact["firstName"] = first_name
        if last_name:
            contact["lastName"] = last_name

        data = await self._request(
            "POST", "/contacts", tenant_id=tenant_id, json={"contacts": [contact]}
        )
        return self._contact(data["contacts"][0])

    async def create_invoice(self, tenant_id: str, invoice: Dict[str, Any]) -> LedgerInvoiceRecord:
        data = await self._request(
            "PUT", "/invoices", tenant_id=tenant_id, json={"invoices": [invoice]}
        )
        return self._invoice(data["invoices"][0])

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> LedgerInvoiceRecord:
        data = await self._request("GET", f"/invoices/{invoice_id}", tenant_id=tenant_id)
        return self._invoice(data["invoices"][0])

    async def create_payment(self, tenant_id: str, payment: Dict[str, Any]) -> str:
        """Create a payment against an invoice and return its external id."""
        data = await self._request(
            "PUT", "/payments", tenant_id=tenant_id, json={"payments": [payment]}
        )
        return data["payments"][0]["paymentID"]

    async def _request(
        self,
        method: str,
        path: str,
        tenant_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        if tenant_id:
            headers["tenant-id"] = tenant_id

        try:
            response = await self._send(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise LedgerUnavailable(f"Ledger unreachable: {str(e)}") from e

        if response.status_code >= 400:
            response_data = self._json_or_none(response)
            message = self._error_message(response, response_data)
            raise classify_error(response.status_code, message, response_data)

        return response.json() if response.content else {}

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await self.http_client.request(method, url, **kwargs)

    @staticmethod
    def _json_or_none(response: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else {"body": data}

    @staticmethod
    def _error_message(response: httpx.Response, data: Optional[Dict[str, Any]]) -> str:
        if data:
            messages = [
                error.get("message", "")
                for error in data.get("validationErrors", [])
                if isinstance(error, dict)
            ]
            if messages:
                return "; ".join(messages)
            for key in ("message", "detail", "error"):
                if data.get(key):
                    return str(data[key])
        return response.text or f"HTTP {response.status_code}"

    @staticmethod
    def _contact(item: Dict[str, Any]) -> LedgerContactRecord:
        return LedgerContactRecord(
            contact_id=item["contactID"],
            name=item.get("name", ""),
            email=item.get("emailAddress"),
            status=item.get("contactStatus", "ACTIVE"),
        )

    @staticmethod
    def _invoice(item: Dict[str, Any]) -> LedgerInvoiceRecord:
        return LedgerInvoiceRecord(
            invoice_id=item["invoiceID"],
            invoice_number=item.get("invoiceNumber"),
            status=item.get("status"),
            amount_due=float(item.get("amountDue", 0) or 0),
        )
