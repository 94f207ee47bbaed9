"""Bearer-token guard for cron and operator endpoints."""
import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def require_cron_token(settings: Settings):
    """Build a dependency that accepts only the configured cron secret."""

    async def verify_cron_token(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ) -> None:
        expected = settings.cron_secret
        if not expected:
            logger.error(f"{settings.service_name}: cron_secret is not configured, rejecting trigger")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Scheduled triggers are not configured",
            )

        if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing cron token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    return verify_cron_token
