"""Application configuration using pydantic-settings.

Covers the treasury loops (float manager, sweeper, withdrawal dispatcher) and the
downstream services they talk to.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/walletadapter.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    app_host: str = Field(default="0.0.0.0", description="API server host")
    app_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    sentry_environment: str = Field(
        default="staging", description="Deployment environment (production or staging)"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # ======================
    # Service identity
    # ======================
    service_id: str = Field(default="", description="Service ID used for the auth token")
    service_key: str = Field(default="", description="Service key used for the auth token")
    locker_prefix: str = Field(
        default="wallet-adapter-", description="Prefix applied to every lock identifier"
    )

    # ======================
    # Downstream services
    # ======================
    authentication_service_url: str = Field(
        default="http://localhost:9000", description="Authentication service base URL"
    )
    key_management_url: str = Field(
        default="http://localhost:9001", description="Key management service base URL"
    )
    crypto_adapter_url: str = Field(
        default="http://localhost:9002", description="Crypto adapter service base URL"
    )
    order_book_url: str = Field(
        default="http://localhost:9003", description="Order book service base URL"
    )
    notification_service_url: str = Field(
        default="http://localhost:9004", description="Notification service base URL"
    )
    locker_service_url: str = Field(
        default="http://localhost:9005", description="Locker service base URL"
    )
    request_timeout: float = Field(default=30.0, description="Downstream request timeout (s)")
    sign_timeout: float = Field(default=120.0, description="Sign and broadcast timeout (s)")

    # ======================
    # Schedules
    # ======================
    float_cron_interval: str = Field(default="*/30 * * * *", description="Float manager crontab")
    sweep_cron_interval: str = Field(default="*/10 * * * *", description="Sweeper crontab")
    process_transaction_cron_interval: str = Field(
        default="* * * * *", description="Single withdrawal dispatch crontab"
    )
    process_batch_cron_interval: str = Field(
        default="*/2 * * * *", description="Batch withdrawal processing crontab"
    )
    purge_cache_interval: int = Field(
        default=300, description="Seconds between auth token cache purges"
    )
    expire_cache_duration: int = Field(
        default=3600, description="Fallback auth token lifetime (s) when none is advertised"
    )

    # ======================
    # Withdrawal batching
    # ======================
    batch_wait_seconds: int = Field(
        default=120, description="Seconds a batch stays open for additions"
    )
    broadcast_wait_seconds: int = Field(
        default=60, description="Seconds to wait after broadcast before re-checking status"
    )

    # ======================
    # Cold wallet operators
    # ======================
    cold_wallet_email: str = Field(default="", description="Cold wallet operator email")
    cold_wallet_email_template_id: str = Field(
        default="", description="Email template used for fund requests"
    )
    cold_wallet_sms_number: str = Field(default="", description="Cold wallet operator phone")

    # ======================
    # Sweep thresholds (display units)
    # ======================
    btc_minimum_sweep: Decimal = Field(default=Decimal("0.2"), description="BTC minimum sweep")
    eth_minimum_sweep: Decimal = Field(default=Decimal("0.1"), description="ETH minimum sweep")
    bnb_minimum_sweep: Decimal = Field(default=Decimal("0.5"), description="BNB minimum sweep")
    busd_minimum_sweep: Decimal = Field(default=Decimal("50"), description="BUSD minimum sweep")
    sweep_fee_percentage_threshold: Decimal = Field(
        default=Decimal("0.1"), description="Maximum share of a sweep that may be spent on fees"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.sentry_environment.lower() == "production"

    def minimum_sweep(self, asset_symbol: str) -> Optional[Decimal]:
        """Get the configured minimum sweep for an asset, if any."""
        minimums = {
            "BTC": self.btc_minimum_sweep,
            "ETH": self.eth_minimum_sweep,
            "BNB": self.bnb_minimum_sweep,
            "BUSD": self.busd_minimum_sweep,
        }
        return minimums.get(asset_symbol.upper())

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.sentry_environment,
            "debug": self.debug,
            "app_host": self.app_host,
            "app_port": self.app_port,
            "database_url": self._redact_url(self.database_url),
            "service_id": self.service_id or "(not set)",
            "service_key": "***" if self.service_key else "(not set)",
            "locker_prefix": self.locker_prefix,
            "schedules": {
                "float": self.float_cron_interval,
                "sweep": self.sweep_cron_interval,
                "process_transaction": self.process_transaction_cron_interval,
                "process_batch": self.process_batch_cron_interval,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
