import logging
import os
from decimal import Decimal
from typing import Literal


def get_database_url() -> str | None:
    """Get Postgres connection URL (Railway provides DATABASE_URL)."""
    return os.getenv("DATABASE_URL")


def get_store_backend() -> Literal["memory", "postgres"]:
    """Pick the position store; postgres when a database is configured."""
    backend = os.getenv("STAKING_STORE")
    if backend in ("memory", "postgres"):
        return backend
    return "postgres" if get_database_url() else "memory"


class Config:
    """Global configuration."""

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Persistence
    DATABASE_URL = get_database_url()
    STAKING_STORE = get_store_backend()
    DB_POOL_MIN_SIZE = int(os.getenv("DB_POOL_MIN_SIZE", "1"))
    DB_POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "10"))
    DB_COMMAND_TIMEOUT = float(os.getenv("DB_COMMAND_TIMEOUT", "60"))

    # Token amounts
    CURRENCY_DECIMALS = int(os.getenv("CURRENCY_DECIMALS", "6"))
    AMOUNT_QUANTUM = Decimal(1).scaleb(-CURRENCY_DECIMALS)

    # Defaults for assets without stored staking settings
    DEFAULT_STAKING_ENABLED = os.getenv("DEFAULT_STAKING_ENABLED", "true").lower() == "true"
    DEFAULT_LOCK_DURATION_DAYS = int(os.getenv("DEFAULT_LOCK_DURATION_DAYS", "90"))
    DEFAULT_MINIMUM_STAKE = Decimal(os.getenv("DEFAULT_MINIMUM_STAKE", "500"))
    DEFAULT_ROYALTY_SHARE_BPS = int(os.getenv("DEFAULT_ROYALTY_SHARE_BPS", "1000"))

    # Per-position locking
    LOCK_TIMEOUT_SECONDS = float(os.getenv("STAKING_LOCK_TIMEOUT_SECONDS", "2.0"))
    CONTENTION_MAX_ATTEMPTS = int(os.getenv("STAKING_CONTENTION_MAX_ATTEMPTS", "3"))
    CONTENTION_BACKOFF_SECONDS = float(os.getenv("STAKING_CONTENTION_BACKOFF_SECONDS", "0.05"))


def configure_logging(level: str | None = None) -> None:
    """Configure root logging in the format the services share."""
    logging.basicConfig(
        level=level or Config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
