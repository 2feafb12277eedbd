from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    Process configuration.

    Values come from `config.env` (non-dot env file) at the repository root,
    a `.env` if present, and finally the environment. Business settings that
    staff change at runtime (tax rate, inventory tracking) are NOT here; they
    live in the settings store, see `settings_store.py`.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="pos", validation_alias="DB_USER")
    db_password: str = Field(default="pos", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="pos", validation_alias="DB_NAME")
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")

    cors_origins: str = Field(default="http://localhost:5173", validation_alias="CORS_ORIGINS")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    # "memory" keeps rate-limit and CSRF state per process; "redis" shares it
    shared_state_backend: str = Field(default="memory", validation_alias="SHARED_STATE_BACKEND")

    # Percent. Used when the tax_rate settings row is missing or unparseable.
    default_tax_rate: Decimal = Field(default=Decimal("11"), validation_alias="DEFAULT_TAX_RATE")

    csrf_enabled: bool = Field(default=True, validation_alias="CSRF_ENABLED")
    csrf_token_ttl_seconds: int = Field(default=30 * 60, validation_alias="CSRF_TOKEN_TTL_SECONDS")

    # Payment fraud guards
    max_payment_amount: int = Field(default=50_000_000, validation_alias="MAX_PAYMENT_AMOUNT")
    max_payments_per_minute: int = Field(default=5, validation_alias="MAX_PAYMENTS_PER_MINUTE")
    max_failed_payment_attempts: int = Field(default=3, validation_alias="MAX_FAILED_PAYMENT_ATTEMPTS")
    failed_payment_window_seconds: int = Field(default=3600, validation_alias="FAILED_PAYMENT_WINDOW_SECONDS")

    # Customer gateway
    qr_lookup_rate_limit: int = Field(default=30, validation_alias="QR_LOOKUP_RATE_LIMIT")
    customer_order_rate_limit: int = Field(default=5, validation_alias="CUSTOMER_ORDER_RATE_LIMIT")
    rate_limit_window_seconds: int = Field(default=60, validation_alias="RATE_LIMIT_WINDOW_SECONDS")
    max_customer_name_length: int = 100
    max_notes_length: int = 500
    max_special_instructions_length: int = 500

    auto_sync_availability: bool = Field(default=True, validation_alias="AUTO_SYNC_AVAILABILITY")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # psycopg v3 driver
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
