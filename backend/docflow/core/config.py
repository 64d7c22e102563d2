"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database
    database_url: str = "sqlite:///./docflow.db"
    sql_echo: bool = False

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # ==========================================================================
    # Derived documents
    # ==========================================================================
    default_currency: str = "BHD"
    base_currency: str = "BHD"
    default_exchange_rate: Decimal = Decimal("1.0000")  # 1:1 placeholder
    invoice_due_days: int = 30

    # Bounded retry for document numbers (INV, PFINV, LPO, QT)
    number_max_attempts: int = 10

    # "warn" clamps over-fulfilled lines and records a warning,
    # "block" rejects the derivation with a validation error
    over_fulfillment_policy: Literal["warn", "block"] = "warn"

    # Placeholder item master records
    placeholder_item_category: str = "Auto-generated"
    placeholder_unit_of_measure: str = "EA"
    placeholder_supplier_code: str = "AUTO-SUP"

    @field_validator("number_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("NUMBER_MAX_ATTEMPTS must be at least 1")
        return v

    @field_validator("default_exchange_rate")
    @classmethod
    def validate_exchange_rate(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("DEFAULT_EXCHANGE_RATE must be positive")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
