"""
Overage Billing Configuration
=============================

PURPOSE:
    Pydantic-Settings based configuration for the overage billing service.
    All settings can be overridden via environment variables (OVERAGE_ prefix).

    Services never read this module directly: the container builds them from
    a Settings instance and passes the values they need to their constructors.
"""

import logging
from pathlib import Path
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime configuration for reconciliation, Stripe access and storage."""

    app_name: str = "overage-billing"
    debug: bool = False

    # Storage. database_url wins when set; otherwise a SQLite file under data_directory.
    data_directory: str = "./data"
    database_url: Optional[str] = None

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_api_version: Optional[str] = None
    currency: str = "usd"
    price_interval: Literal["day", "week", "month", "year"] = "month"
    # Deleting a metered item with usage requires clear_usage on the Stripe side.
    detach_clear_usage: bool = True

    # Plans whose tenants get a local-only overage flag
    free_plan_slugs: List[str] = ["free"]

    # Time bounds (seconds)
    provider_timeout_s: float = 15.0
    tenant_timeout_s: float = 60.0

    # Service-to-service auth for the HTTP surface; disabled when unset
    internal_api_key: Optional[str] = None

    # Logging
    log_dir: str = "logs"
    log_file: str = "overage_billing.jsonl"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "OVERAGE_"

    def get_database_url(self) -> str:
        """Return the configured database URL, defaulting to a local SQLite file."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{Path(self.data_directory) / 'overage_billing.db'}"

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)


settings = Settings()
