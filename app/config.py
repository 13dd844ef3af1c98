from pydantic_settings import BaseSettings
from pydantic import Field
from decimal import Decimal
from typing import Optional, List

class Settings(BaseSettings):
    # Database
    db_user: str = Field(default="postgres", alias='DB_USER')
    db_host: str = Field(default="localhost", alias='DB_HOST')
    db_password: str = Field(default="postgres", alias='DB_PASSWORD')
    db_port: int = Field(default=5432, alias='DB_PORT')
    db_name: str = Field(default="conference_tickets", alias='DB_NAME')
    db_pool_min_size: int = Field(default=2, alias='DB_POOL_MIN_SIZE')
    db_pool_max_size: int = Field(default=10, alias='DB_POOL_MAX_SIZE')
    db_command_timeout: float = Field(default=30.0, alias='DB_COMMAND_TIMEOUT')

    # Ticket credentials
    qr_secret: str = Field(default="change-me", alias='QR_SECRET')
    qr_max_age_days: Optional[int] = Field(default=365, alias='QR_MAX_AGE_DAYS')

    # Seat pool
    seat_capacity: int = Field(default=1300, alias='SEAT_CAPACITY')

    # Ticket classification fallback (lowercase substrings of line item names)
    ticket_name_patterns: str = Field(default="ingresso,ticket,entrada", alias='TICKET_NAME_PATTERNS')
    # Event assigned to ticket lines that carry no event reference
    default_event_id: Optional[str] = Field(default=None, alias='DEFAULT_EVENT_ID')

    # Reconciliation
    reconciliation_enabled: bool = Field(default=False, alias='RECONCILIATION_ENABLED')
    reconciliation_interval_seconds: int = Field(default=300, alias='RECONCILIATION_INTERVAL_SECONDS')
    execution_timeout_seconds: int = Field(default=240, alias='RECONCILIATION_TIMEOUT_SECONDS')
    lock_ttl_seconds: int = Field(default=300, alias='RECONCILIATION_LOCK_TTL_SECONDS')
    batch_size: int = Field(default=100, alias='RECONCILIATION_BATCH_SIZE')
    lookback_hours: int = Field(default=24, alias='RECONCILIATION_LOOKBACK_HOURS')
    orphan_ticket_tolerance_minutes: int = Field(default=5, alias='ORPHAN_TICKET_TOLERANCE_MINUTES')
    orphan_order_min_age_hours: int = Field(default=1, alias='ORPHAN_ORDER_MIN_AGE_HOURS')
    orphan_order_max_age_days: int = Field(default=7, alias='ORPHAN_ORDER_MAX_AGE_DAYS')
    price_epsilon: Decimal = Field(default=Decimal("0.01"), alias='PRICE_EPSILON')

    # Alert thresholds
    alert_max_duration_seconds: float = Field(default=180.0, alias='ALERT_MAX_DURATION_SECONDS')
    alert_min_api_success_rate: float = Field(default=0.90, alias='ALERT_MIN_API_SUCCESS_RATE')
    alert_critical_api_success_rate: float = Field(default=0.50, alias='ALERT_CRITICAL_API_SUCCESS_RATE')
    alert_max_errors: int = Field(default=5, alias='ALERT_MAX_ERRORS')
    alert_max_lock_acquisition_seconds: float = Field(default=30.0, alias='ALERT_MAX_LOCK_ACQUISITION_SECONDS')
    health_recent_run_hours: int = Field(default=1, alias='HEALTH_RECENT_RUN_HOURS')

    # App settings
    app_env: str = Field(default="development", alias='APP_ENV')
    port: int = Field(default=8001, alias='FASTAPI_PORT')
    host: str = Field(default="0.0.0.0", alias='FASTAPI_HOST')
    debug: bool = Field(default=False, alias='DEBUG')

    # Shared secret for internal endpoints (webhook handler, scheduler, admin)
    internal_api_token: Optional[str] = Field(default=None, alias='INTERNAL_API_TOKEN')

    # Discord webhooks
    discord_alerts_webhook_url: Optional[str] = Field(default=None, alias='DISCORD_ALERTS_WEBHOOK_URL')

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def db_connection_params(self) -> dict:
        return {
            "host": self.db_host,
            "port": self.db_port,
            "user": self.db_user,
            "password": self.db_password,
            "database": self.db_name,
        }

    @property
    def ticket_name_pattern_list(self) -> List[str]:
        return [p.strip().lower() for p in self.ticket_name_patterns.split(",") if p.strip()]

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def validate_reconciliation_settings(config: Settings) -> bool:
    """Reject settings that would break the reconciliation guarantees."""
    errors = []

    if config.batch_size <= 0:
        errors.append("RECONCILIATION_BATCH_SIZE must be greater than 0")

    if config.execution_timeout_seconds <= 0:
        errors.append("RECONCILIATION_TIMEOUT_SECONDS must be greater than 0")

    # The lease must outlive the worst-case pass
    if config.lock_ttl_seconds <= config.execution_timeout_seconds:
        errors.append("RECONCILIATION_LOCK_TTL_SECONDS must exceed RECONCILIATION_TIMEOUT_SECONDS")

    if config.seat_capacity <= 0:
        errors.append("SEAT_CAPACITY must be greater than 0")

    if config.price_epsilon < 0:
        errors.append("PRICE_EPSILON must not be negative")

    if config.orphan_order_min_age_hours >= config.orphan_order_max_age_days * 24:
        errors.append("ORPHAN_ORDER_MIN_AGE_HOURS must be shorter than ORPHAN_ORDER_MAX_AGE_DAYS")

    if errors:
        raise ValueError(f"Invalid reconciliation settings: {', '.join(errors)}")

    return True

settings = Settings()
