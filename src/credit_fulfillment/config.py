"""
Application configuration using Pydantic Settings.
"""

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or `.env`)."""

    # Credits
    CREDITS_PER_PACK: int = 10
    CREDIT_COST_PER_GENERATION: int = 1

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ID: str = ""
    APP_URL: str = "http://localhost:3000"

    # Record store; empty URI selects the in-memory store
    MONGO_URI: str = ""
    MONGO_DB: str = "credit_fulfillment"

    # Logging
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


settings = Settings()


def validate_processor_settings(config: Settings = settings) -> None:
    """Fail fast when the Stripe processor is requested without its secrets."""
    missing = [
        name
        for name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "STRIPE_PRICE_ID")
        if not (getattr(config, name) or "").strip()
    ]
    if missing:
        raise ValueError(f"Stripe is not configured: missing {', '.join(missing)}")


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
