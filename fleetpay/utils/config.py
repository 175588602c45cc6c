"""Application settings.

Values come from environment variables prefixed with ``FLEETPAY_`` (or a
``.env`` file in the working directory), e.g.::

    FLEETPAY_DATABASE_URL=postgresql+psycopg://fleet:***@db/fleet
    FLEETPAY_PAYMENT_CODE_PREFIX=PM-
    FLEETPAY_TRANSACTION_MAX_RETRIES=5
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the reconciliation engine."""

    model_config = SettingsConfigDict(
        env_prefix="FLEETPAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = Field(
        default="sqlite:///./fleetpay.db",
        description="SQLAlchemy database URL",
    )

    # Payment numbering
    payment_code_prefix: str = Field(default="PM-", min_length=1, max_length=10)
    payment_code_width: int = Field(default=5, ge=1, le=12)

    # Transactions
    transaction_max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries of a unit of work aborted by a lock or serialization conflict",
    )
    transaction_retry_base_delay: float = Field(default=0.05, gt=0, le=5.0)

    # Queries
    unallocated_reservations_limit: int = Field(default=200, ge=1, le=5000)

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = False
    debug: bool = False

    # Comma-separated dotted paths of extra event listeners
    event_listeners: str | None = None


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Re-read settings from the environment (used by tests and the CLI)."""
    global _settings
    _settings = Settings()
    return _settings
