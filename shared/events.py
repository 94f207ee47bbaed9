"""Payment completion events consumed by the completion processor."""
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from .database import utcnow
from .purchases import StagingPayload


class EventType(str, Enum):
    """Source record kind of a completion event."""
    PAYMENTS = "payments"
    USER_MEMBERSHIPS = "user_memberships"
    USER_REGISTRATIONS = "user_registrations"


class TriggerSource(str, Enum):
    """What produced the terminal payment outcome."""
    GATEWAY_WEBHOOK = "gateway_webhook"
    FREE_MEMBERSHIP = "free_membership"
    FREE_REGISTRATION = "free_registration"
    PAYMENT_FAILED = "payment_failed"


class CompletionMetadata(BaseModel):
    """Gateway and staging linkage carried by an event."""

    charge_id: Optional[str] = None
    staging_record_id: Optional[UUID] = None  # the only key used to find the staging record
    failure_reason: Optional[str] = None
    failed: bool = False
    is_payment_plan: bool = False
    payment_plan_id: Optional[UUID] = None
    installment_number: int = Field(default=1, ge=1)
    payment_method_id: Optional[str] = None  # saved for later installment charges

    class Config:
        frozen = True

    @property
    def is_later_installment(self) -> bool:
        return self.is_payment_plan and self.installment_number > 1


class BaseCompletionEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    record_id: Optional[UUID] = None
    user_id: UUID
    payment_id: Optional[UUID] = None
    amount: int = 0  # cents
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: CompletionMetadata = Field(default_factory=CompletionMetadata)

    class Config:
        frozen = True


class GatewayPaymentEvent(BaseCompletionEvent):
    """A charge settled successfully at the gateway."""
    trigger_source: Literal["gateway_webhook"] = "gateway_webhook"


class FreePurchaseEvent(BaseCompletionEvent):
    """A zero-value purchase completed without a charge."""
    trigger_source: Literal["free_membership", "free_registration"]
    staging_payload: StagingPayload


class FailedPaymentEvent(BaseCompletionEvent):
    """A charge was declined or canceled."""
    trigger_source: Literal["payment_failed"] = "payment_failed"
    metadata: CompletionMetadata = Field(
        default_factory=lambda: CompletionMetadata(failed=True)
    )

    @field_validator("metadata")
    @classmethod
    def mark_failed(cls, value: CompletionMetadata) -> CompletionMetadata:
        if value.failed:
            return value
        return value.model_copy(update={"failed": True})


PaymentCompletionEvent = Annotated[
    Union[GatewayPaymentEvent, FreePurchaseEvent, FailedPaymentEvent],
    Field(discriminator="trigger_source"),
]


EVENT_REGISTRY: Dict[TriggerSource, type[BaseCompletionEvent]] = {
    TriggerSource.GATEWAY_WEBHOOK: GatewayPaymentEvent,
    TriggerSource.FREE_MEMBERSHIP: FreePurchaseEvent,
    TriggerSource.FREE_REGISTRATION: FreePurchaseEvent,
    TriggerSource.PAYMENT_FAILED: FailedPaymentEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseCompletionEvent:
    """Deserialize event from dictionary."""
    trigger_source = TriggerSource(event_data["trigger_source"])
    event_class = EVENT_REGISTRY[trigger_source]
    return event_class(**event_data)
