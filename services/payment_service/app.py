"""Payment Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, Optional
from uuid import UUID

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from services.ledger_service.staging import StagingManager
from services.notification_service.staging import EmailStager
from services.registration_service.discounts import DiscountUsageRecorder
from shared.auth import require_cron_token
from shared.config import Settings
from shared.database import Database
from shared.events import deserialize_event

from .checkout import (
    CheckoutResult,
    CheckoutService,
    MembershipCheckoutRequest,
    RegistrationCheckoutRequest,
)
from .completion_processor import CompletionResult, PaymentCompletionProcessor
from .gateway import PaymentGateway
from .installments import InstallmentCharger, InstallmentRunResult
from .models import Payment

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="payment-service",
    service_port=8003,
)

database = Database(settings.database_url)
cron_auth = require_cron_token(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    logging.getLogger().setLevel(settings.log_level)

    # Startup
    logger.info("Starting Payment Service...")
    await database.create_tables()
    logger.info("Payment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Payment Service...")
    await database.close()


app = FastAPI(title="Payment Service", lifespan=lifespan)


async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


def get_gateway() -> PaymentGateway:
    return PaymentGateway(settings.stripe_secret_key, settings.stripe_webhook_secret, settings.currency)


def get_checkout_service(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
) -> CheckoutService:
    return CheckoutService(session, gateway, settings)


# Request/Response models
class PaymentResponse(BaseModel):
    """Payment response."""
    id: UUID
    user_id: UUID
    total_amount: int
    discount_amount: int
    final_amount: int
    currency: str
    status: str
    gateway_charge_id: Optional[str] = None
    staging_record_id: Optional[UUID] = None
    reservation_id: Optional[UUID] = None
    purchase_type: str
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# API Endpoints
@app.post("/checkout/registrations", response_model=CheckoutResult, status_code=201)
async def checkout_registration(
    request: RegistrationCheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """Reserve, stage and charge a registration."""
    return await service.start_registration_checkout(request)


@app.post("/checkout/memberships", response_model=CheckoutResult, status_code=201)
async def checkout_membership(
    request: MembershipCheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
):
    """Stage and charge a membership."""
    return await service.start_membership_checkout(request)


@app.post("/webhooks/gateway")
async def gateway_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    gateway: PaymentGateway = Depends(get_gateway),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Receive signed charge outcome events from the gateway."""
    payload = await request.body()
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing signature header")

    try:
        event = gateway.construct_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Rejected gateway webhook: {str(e)}")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    result = await service.handle_gateway_event(event)
    return {
        "received": True,
        "processed": result is not None,
        "staging_record_id": str(result.staging_record_id) if result and result.staging_record_id else None,
    }


@app.post(
    "/payment-completions",
    response_model=CompletionResult,
    dependencies=[Depends(cron_auth)],
)
async def replay_payment_completion(
    event_data: Dict[str, Any],
    session: AsyncSession = Depends(get_session),
):
    """Re-run the completion processor for a serialized event."""
    try:
        event = deserialize_event(event_data)
    except (KeyError, ValueError, ValidationError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid completion event: {str(e)}")

    staging_manager = StagingManager(
        session,
        bank_account_code=settings.ledger_bank_account_code,
        default_account_code=settings.ledger_default_account_code,
    )
    processor = PaymentCompletionProcessor(
        session,
        staging_manager,
        EmailStager(session, settings),
        DiscountUsageRecorder(session),
    )
    logger.info(f"Replaying completion event {event.event_id} ({event.trigger_source})")
    return await processor.process_payment_completion(event)


@app.post(
    "/payment-plans/process-due",
    response_model=InstallmentRunResult,
    dependencies=[Depends(cron_auth)],
)
async def process_due_installments(
    today: Optional[date] = None,
    service: CheckoutService = Depends(get_checkout_service),
):
    """Charge payment plan installments that have come due."""
    charger = InstallmentCharger(
        service,
        max_attempts=settings.installment_max_attempts,
        retry_hours=settings.installment_retry_hours,
    )
    return await charger.process_due_installments(today)


@app.get("/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: UUID, session: AsyncSession = Depends(get_session)):
    """Get payment by ID."""
    payment = await session.get(Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentResponse.model_validate(payment)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "payment-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
