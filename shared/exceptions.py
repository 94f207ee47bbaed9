"""Reconciliation errors surfaced to API callers."""
from typing import Any, Optional
from uuid import UUID

from fastapi import HTTPException, status


class ReconciliationError(HTTPException):
    """Base class for purchase and reconciliation errors."""

    def __init__(self, status_code: int, message: str, **extra: Any):
        self.message = message
        super().__init__(status_code=status_code, detail={"error": message, **extra})

    def __str__(self) -> str:
        return self.message


class CapacityExceeded(ReconciliationError):
    def __init__(self, category_id: UUID, max_capacity: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            message="This category is at capacity",
            category_id=str(category_id),
            max_capacity=max_capacity,
            should_offer_waitlist=True,
        )
        self.category_id = category_id
        self.should_offer_waitlist = True


class DuplicateReservation(ReconciliationError):
    def __init__(self, message: str = "You are already registered for this category",
                 minutes_left: Optional[int] = None):
        extra = {"minutes_left": minutes_left} if minutes_left is not None else {}
        super().__init__(status_code=status.HTTP_409_CONFLICT, message=message, **extra)
        self.minutes_left = minutes_left


class GatewayStatusAmbiguous(ReconciliationError):
    def __init__(self, charge_id: str, gateway_status: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            message="A payment for this registration is still being processed. Please wait a moment.",
            charge_id=charge_id,
            gateway_status=gateway_status,
        )
        self.charge_id = charge_id
        self.gateway_status = gateway_status


class StagingCreationFailed(ReconciliationError):
    def __init__(self, user_id: UUID):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message="Unable to prepare accounting records for this purchase",
            user_id=str(user_id),
        )


class StagingRecordNotFound(ReconciliationError):
    """No staging record for a completed payment. Requires operator review."""

    def __init__(self, message: str, staging_record_id: Optional[UUID] = None,
                 payment_id: Optional[UUID] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            message=message,
            staging_record_id=str(staging_record_id) if staging_record_id else None,
            payment_id=str(payment_id) if payment_id else None,
            requires_manual_review=True,
        )
        self.staging_record_id = staging_record_id
        self.payment_id = payment_id


class StagingRecordMismatch(StagingRecordNotFound):
    """Staging record exists but belongs to another user or payment."""
