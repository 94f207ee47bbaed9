"""Payment gateway client backed by the Stripe SDK."""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"

# Charge states from which no further gateway transition is expected
TERMINAL_FAILURE_STATUSES = frozenset({"failed", "canceled", "requires_payment_method"})


class ChargeHandle(BaseModel):
    """Newly created charge."""
    id: str
    client_secret: Optional[str] = None
    status: str


class PaymentGateway:
    """Wrapper around Stripe payment intents."""

    def __init__(self, api_key: str, webhook_secret: str = "", currency: str = "USD"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency.lower()

    async def create_charge(
        self,
        amount: int,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        save_payment_method: bool = False,
    ) -> ChargeHandle:
        """
        Create a payment intent.

        Args:
            amount: Amount in cents
            metadata: Linkage ids; must include staging_record_id
            idempotency_key: Stripe idempotency key
            customer_id: Gateway customer the charge belongs to
            payment_method_id: Saved method to confirm off-session immediately
            save_payment_method: Keep the method for later off-session charges

        Returns:
            Handle with the intent id and client secret

        Raises:
            stripe.CardError: An off-session confirmation was declined
        """
        if "staging_record_id" not in metadata:
            raise ValueError("Charge metadata must carry staging_record_id")

        params = {
            "amount": amount,
            "currency": self.currency,
            "metadata": {key: str(value) for key, value in metadata.items() if value is not None},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        if customer_id:
            params["customer"] = customer_id
        if save_payment_method:
            params["setup_future_usage"] = "off_session"
        if payment_method_id:
            params.update(
                payment_method=payment_method_id,
                confirm=True,
                off_session=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            )

        intent = await asyncio.to_thread(self._create_intent, params)
        logger.info(f"Created payment intent {intent['id']} for {amount} cents ({intent['status']})")

        return ChargeHandle(
            id=intent["id"],
            client_secret=intent.get("client_secret"),
            status=intent["status"],
        )

    async def create_customer(self, email: str, name: str, metadata: Dict[str, Any]) -> str:
        """Create a gateway customer that saved payment methods attach to."""
        customer = await asyncio.to_thread(
            self._create_customer,
            {
                "email": email,
                "name": name,
                "metadata": {key: str(value) for key, value in metadata.items() if value is not None},
            },
        )
        logger.info(f"Created gateway customer {customer['id']}")
        return customer["id"]

    async def get_charge_status(self, charge_id: str) -> str:
        """Return the gateway's current status for a charge."""
        intent = await asyncio.to_thread(self._retrieve_intent, charge_id)
        return intent["status"]

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and return the event body.

        Raises:
            stripe.SignatureVerificationError: If signature is invalid
        """
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)

    @retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    def _create_intent(self, params: Dict[str, Any]):
        return stripe.PaymentIntent.create(api_key=self.api_key, **params)

    @retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    def _retrieve_intent(self, charge_id: str):
        return stripe.PaymentIntent.retrieve(charge_id, api_key=self.api_key)

    @retry(
        retry=retry_if_exception_type(stripe.APIConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    def _create_customer(self, params: Dict[str, Any]):
        return stripe.Customer.create(api_key=self.api_key, **params)
