import httpx
import pytest

from services.ledger_service.client import (
    ArchivedContactError,
    LedgerClient,
    LedgerRateLimited,
    LedgerUnavailable,
    LedgerValidationError,
    classify_error,
)


def client_for(handler):
    return LedgerClient(
        "https://ledger.test/",
        "token-abc",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.parametrize(
    "status_code,message,expected",
    [
        (429, "Slow down", LedgerRateLimited),
        (503, "Daily quota exceeded", LedgerRateLimited),
        (400, "Invoice total is invalid", LedgerValidationError),
        (400, "The contact has been archived", ArchivedContactError),
        (401, "Unauthorized", LedgerUnavailable),
        (500, "Internal error", LedgerUnavailable),
        (None, "Connection reset", LedgerUnavailable),
    ],
)
def test_classify_error(status_code, message, expected):
    assert type(classify_error(status_code, message)) is expected


@pytest.mark.asyncio
async def test_requests_carry_auth_and_tenant_headers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"invoices": [{"invoiceID": "inv-9", "invoiceNumber": "INV-0009", "amountDue": "12.50"}]},
        )

    client = client_for(handler)
    invoice = await client.get_invoice("tenant-1", "inv-9")
    await client.close()

    assert str(seen[0].url) == "https://ledger.test/invoices/inv-9"
    assert seen[0].headers["Authorization"] == "Bearer token-abc"
    assert seen[0].headers["tenant-id"] == "tenant-1"
    assert invoice.invoice_number == "INV-0009"
    assert invoice.amount_due == 12.5


@pytest.mark.asyncio
async def test_validation_messages_are_joined():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={
                "validationErrors": [
                    {"message": "Account code is invalid"},
                    {"message": "Due date is required"},
                ]
            },
        )

    client = client_for(handler)
    with pytest.raises(LedgerValidationError) as exc_info:
        await client.create_invoice("tenant-1", {"type": "ACCREC"})
    await client.close()

    assert exc_info.value.message == "Account code is invalid; Due date is required"
    assert exc_info.value.status_code == 400
    assert exc_info.value.response_data["validationErrors"][0]["message"] == "Account code is invalid"


@pytest.mark.asyncio
async def test_plain_text_errors_are_kept():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad gateway")

    client = client_for(handler)
    with pytest.raises(LedgerUnavailable) as exc_info:
        await client.list_connections()
    await client.close()

    assert exc_info.value.message == "Bad gateway"


@pytest.mark.asyncio
async def test_validate_connection_reports_false_on_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "Token expired"})

    client = client_for(handler)
    assert await client.validate_connection("tenant-1") is False
    await client.close()


@pytest.mark.asyncio
async def test_list_contacts_sends_filters():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"contacts": [{"contactID": "c-1", "name": "Jamie Rivera - M-1001", "contactStatus": "ARCHIVED"}]},
        )

    client = client_for(handler)
    contacts = await client.list_contacts("tenant-1", name="Jamie Rivera - M-1001", include_archived=True)
    await client.close()

    params = seen[0].url.params
    assert params["name"] == "Jamie Rivera - M-1001"
    assert params["includeArchived"] == "true"
    assert contacts[0].is_archived
