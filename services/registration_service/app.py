"""Registration Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from services.payment_service.gateway import PaymentGateway
from shared.auth import require_cron_token
from shared.config import Settings
from shared.database import Database

from .models import RegistrationCategory, Reservation, ReservationStatus
from .reservations import ReservationManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="registration-service",
    service_port=8001,
)

database = Database(settings.database_url)
cron_auth = require_cron_token(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    logging.getLogger().setLevel(settings.log_level)

    # Startup
    logger.info("Starting Registration Service...")
    await database.create_tables()
    logger.info("Registration Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Registration Service...")
    await database.close()


app = FastAPI(title="Registration Service", lifespan=lifespan)


async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


def get_gateway() -> PaymentGateway:
    return PaymentGateway(settings.stripe_secret_key, settings.stripe_webhook_secret, settings.currency)


def get_reservation_manager(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ReservationManager:
    return ReservationManager(session, gateway, ttl_seconds=settings.reservation_ttl_seconds)


# Request/Response models
class ReserveRequest(BaseModel):
    user_id: UUID
    category_id: UUID


class ProcessingRequest(BaseModel):
    charge_id: str
    payment_id: Optional[UUID] = None


class ReservationResponse(BaseModel):
    """Reservation response."""
    id: UUID
    user_id: UUID
    category_id: UUID
    status: str
    expires_at: Optional[datetime] = None
    external_charge_id: Optional[str] = None
    amount: int

    class Config:
        from_attributes = True


class OccupancyResponse(BaseModel):
    category_id: UUID
    taken: int
    max_capacity: Optional[int] = None
    available: Optional[int] = None


# API Endpoints
@app.post("/reservations", response_model=ReservationResponse, status_code=201)
async def create_reservation(
    request: ReserveRequest,
    manager: ReservationManager = Depends(get_reservation_manager),
):
    """Hold a seat in a capacity-limited category."""
    reservation = await manager.reserve(request.user_id, request.category_id)
    return ReservationResponse.model_validate(reservation)


@app.post("/reservations/{reservation_id}/renew", response_model=ReservationResponse)
async def renew_reservation(
    reservation_id: UUID,
    session: AsyncSession = Depends(get_session),
    manager: ReservationManager = Depends(get_reservation_manager),
):
    """Extend a reservation the member is still paying for."""
    reservation = await session.get(Reservation, reservation_id)
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")

    if reservation.status not in (
        ReservationStatus.AWAITING_PAYMENT.value,
        ReservationStatus.FAILED.value,
    ):
        raise HTTPException(
            status_code=409,
            detail=f"Reservation is {reservation.status} and cannot be renewed",
        )

    reservation = await manager.renew(reservation)
    return ReservationResponse.model_validate(reservation)


@app.post("/reservations/{reservation_id}/processing", response_model=ReservationResponse)
async def start_processing(
    reservation_id: UUID,
    request: ProcessingRequest,
    manager: ReservationManager = Depends(get_reservation_manager),
):
    """Record that the client began confirming the charge."""
    reservation = await manager.mark_processing(reservation_id, request.charge_id, request.payment_id)
    if not reservation:
        raise HTTPException(status_code=409, detail="Reservation cannot move to processing")
    return ReservationResponse.model_validate(reservation)


@app.delete("/reservations/{reservation_id}", status_code=204)
async def release_reservation(
    reservation_id: UUID,
    manager: ReservationManager = Depends(get_reservation_manager),
):
    """Abandon a reservation, freeing its seat."""
    if not await manager.release(reservation_id):
        raise HTTPException(status_code=404, detail="No active reservation to release")


@app.get("/categories/{category_id}/occupancy", response_model=OccupancyResponse)
async def get_occupancy(
    category_id: UUID,
    session: AsyncSession = Depends(get_session),
    manager: ReservationManager = Depends(get_reservation_manager),
):
    category = await session.get(RegistrationCategory, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Registration category not found")

    taken = await manager.occupancy(category_id)
    available = None
    if category.max_capacity is not None:
        available = max(0, category.max_capacity - taken)

    return OccupancyResponse(
        category_id=category_id,
        taken=taken,
        max_capacity=category.max_capacity,
        available=available,
    )


@app.post("/maintenance/expire-reservations", dependencies=[Depends(cron_auth)])
async def expire_reservations(manager: ReservationManager = Depends(get_reservation_manager)):
    """Fail reservations whose hold lapsed long ago."""
    expired = await manager.expire_stale(settings.stale_reservation_seconds)
    return {"expired": expired}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "registration-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
