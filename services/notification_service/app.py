"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request

from shared.auth import require_cron_token
from shared.config import Settings
from shared.database import Database

from .dispatcher import EmailDispatcher, EmailProviderClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

database = Database(settings.database_url)
cron_auth = require_cron_token(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    logging.getLogger().setLevel(settings.log_level)

    # Startup
    logger.info("Starting Notification Service...")
    await database.create_tables()

    provider = EmailProviderClient(settings.email_api_url, settings.email_api_key)
    dispatcher = EmailDispatcher(
        session_factory=database.session_factory,
        provider=provider,
        poll_interval=settings.email_poll_interval_seconds or 60,
    )
    app.state.dispatcher = dispatcher
    if settings.email_poll_interval_seconds > 0:
        await dispatcher.start()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await dispatcher.stop()
    await provider.close()
    await database.close()


app = FastAPI(title="Notification Service", lifespan=lifespan)


def get_dispatcher(request: Request) -> EmailDispatcher:
    return request.app.state.dispatcher


@app.post("/email-sync", dependencies=[Depends(cron_auth)])
async def email_sync(dispatcher: EmailDispatcher = Depends(get_dispatcher)):
    """Send staged emails."""
    return await dispatcher.dispatch_pending()


@app.post("/email-sync/retry-failed", dependencies=[Depends(cron_auth)])
async def retry_failed(
    limit: int = Query(default=100, ge=1, le=1000),
    dispatcher: EmailDispatcher = Depends(get_dispatcher),
):
    """Requeue emails that exhausted their retries."""
    reset = await dispatcher.retry_failed_emails(limit)
    return {"reset": reset}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
