"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "registration-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "club"
    database_url_override: Optional[str] = None

    # Payment gateway
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = "USD"

    # External ledger
    ledger_api_url: str = "https://api.ledger.example.com"
    ledger_access_token: str = ""
    ledger_tenant_id: Optional[str] = None
    ledger_bank_account_code: str = "090"
    ledger_default_account_code: str = "SALES"
    invoice_due_days: int = 30

    # Transactional email provider
    email_api_url: str = "https://app.loops.so/api/v1"
    email_api_key: str = ""
    email_template_membership_purchased: str = "membership-purchased"
    email_template_registration_completed: str = "registration-completed"
    email_template_payment_failed: str = "payment-failed"
    email_template_plan_payment_processed: str = "payment-plan-payment-processed"

    # Reservations
    reservation_ttl_seconds: int = 300
    stale_reservation_seconds: int = 3600

    # Payment plan installments
    installment_max_attempts: int = 3
    installment_retry_hours: int = 24

    # Batch sync tuning
    sync_claim_limit: int = 50
    invoice_batch_size: int = 50
    invoice_concurrency: int = 10
    invoice_batch_delay: float = 0.1
    payment_batch_size: int = 50
    payment_concurrency: int = 15
    payment_batch_delay: float = 0.075
    min_delay_between_syncs: float = 2.0
    stale_claim_seconds: int = 600

    # In-process pollers (0 disables; an external cron drives the endpoints)
    sync_interval_seconds: int = 0
    email_poll_interval_seconds: int = 0

    # Bearer token for scheduled and operator triggers
    cron_secret: str = ""

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async PostgreSQL connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
