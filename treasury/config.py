"""
Treasury wallet settings.

Loaded from environment variables prefixed with ``TREASURY_`` (or a ``.env``
file) and validated by Pydantic Settings.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TREASURY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    APP_NAME: str = "Treasury Wallet API"
    APP_VERSION: str = "1.0.0"

    # === Database ===
    DATABASE_URL: str = "sqlite:///./treasury.db"
    DB_ECHO: bool = False

    # === Ledger ===
    MIN_DEPOSIT: Decimal = Decimal("1000.00")
    CURRENCY: str = "NGN"
    CURRENCY_SYMBOL: str = "₦"
    HISTORY_LIMIT_DEFAULT: int = 50
    HISTORY_LIMIT_MAX: int = 200

    # === Server ===
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
