"""Configuration and environment variable validation for the perps arena."""

import os
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


class Config:
    """Configuration class that loads and validates environment variables."""

    def __init__(self):
        self.load_config()

    def load_config(self):
        """Load and validate all environment variables."""
        # Environment detection
        self.environment = os.getenv("ENVIRONMENT", "development").lower()
        self.is_production = self.environment == "production"
        self.is_development = self.environment == "development"

        # Logging
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        # Database configuration
        self.database_url = os.getenv("DATABASE_URL")
        self.db_echo = os.getenv("DB_ECHO", "false").lower() == "true"
        self.db_pool_size = int(os.getenv("DB_POOL_SIZE", "10"))

        # Redis is optional outside production; alerts fall back to logging only
        self.redis_url = os.getenv("REDIS_URL")

        # Venue configuration
        self.hyperliquid_api_url = os.getenv("HYPERLIQUID_API_URL", "https://api.hyperliquid.xyz")
        self.binance_api_key = os.getenv("BINANCE_API_KEY")
        self.binance_secret_key = os.getenv("BINANCE_SECRET_KEY")

        # Default to production endpoints; testnet must be explicitly requested
        self.binance_testnet = os.getenv("BINANCE_TESTNET", "false").lower() == "true"

        if self.is_production and self.binance_testnet:
            logger.warning("PRODUCTION WARNING: BINANCE_TESTNET=true in production environment")

        self._validate_config()

    def _validate_config(self):
        """Validate configuration and log warnings for potential issues."""
        if self.is_production:
            if not self.database_url:
                raise ValueError("DATABASE_URL must be set in production")

            if not self.redis_url:
                raise ValueError("REDIS_URL must be set in production")

        else:
            logger.info(f"Running in {self.environment} mode")
            if not self.database_url:
                logger.warning("DATABASE_URL not set - using local default")
            if not self.redis_url:
                logger.warning("REDIS_URL not set - alerts will only be logged")

    def get_binance_credentials(self) -> tuple[str, str]:
        """Get Binance master account credentials, with fail-fast validation."""
        if not self.binance_api_key or not self.binance_secret_key:
            raise ValueError(
                "BINANCE_API_KEY and BINANCE_SECRET_KEY must be set to use the Binance provider"
            )
        return self.binance_api_key, self.binance_secret_key


@dataclass
class BatchConfig:
    """Policy constants for batch synchronization and risk metric computation"""

    # Agents processed concurrently per group
    batch_size: int = 10

    # Retry policy (provider fetches and risk metric computation)
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    provider_timeout: float = 30.0

    # Two-tier failure detection
    batch_failure_threshold: float = 0.8
    systemic_failure_threshold: float = 0.5

    max_errors_to_store: int = 100

    @classmethod
    def from_env(cls) -> 'BatchConfig':
        """Create configuration from environment variables"""
        return cls(
            batch_size=int(os.getenv('SYNC_BATCH_SIZE', 10)),
            max_retries=int(os.getenv('SYNC_MAX_RETRIES', 3)),
            retry_base_delay=float(os.getenv('SYNC_RETRY_BASE_DELAY', 1.0)),
            retry_max_delay=float(os.getenv('SYNC_RETRY_MAX_DELAY', 10.0)),
            provider_timeout=float(os.getenv('PROVIDER_TIMEOUT', 30.0)),
            batch_failure_threshold=float(os.getenv('BATCH_FAILURE_THRESHOLD', 0.8)),
            systemic_failure_threshold=float(os.getenv('SYSTEMIC_FAILURE_THRESHOLD', 0.5)),
            max_errors_to_store=int(os.getenv('MAX_ERRORS_TO_STORE', 100)),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base... capped."""
        return min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)


@dataclass
class RiskConfig:
    """Risk metric calculation settings"""

    # When False the period return is used as the annualized return
    annualize_returns: bool = False
    days_per_year: int = 365

    @classmethod
    def from_env(cls) -> 'RiskConfig':
        return cls(
            annualize_returns=os.getenv('RISK_ANNUALIZE_RETURNS', 'false').lower() == 'true',
            days_per_year=int(os.getenv('RISK_DAYS_PER_YEAR', 365)),
        )


@dataclass
class LeaderboardConfig:
    """Leaderboard ranking settings"""

    cache_ttl_seconds: float = 30.0
    default_page_size: int = 50

    @classmethod
    def from_env(cls) -> 'LeaderboardConfig':
        return cls(
            cache_ttl_seconds=float(os.getenv('LEADERBOARD_CACHE_TTL', 30.0)),
            default_page_size=int(os.getenv('LEADERBOARD_PAGE_SIZE', 50)),
        )


@dataclass
class MonitoringConfig:
    """Self-funding detection thresholds (USD)"""

    reconciliation_threshold: Decimal = Decimal("100")
    critical_amount_threshold: Decimal = Decimal("500")

    @classmethod
    def from_env(cls, threshold: Optional[Decimal] = None) -> 'MonitoringConfig':
        return cls(
            reconciliation_threshold=(
                threshold if threshold is not None
                else Decimal(os.getenv('SELF_FUNDING_RECONCILIATION_THRESHOLD', '100'))
            ),
            critical_amount_threshold=Decimal(os.getenv('SELF_FUNDING_CRITICAL_THRESHOLD', '500')),
        )


def configure_logging(level: Optional[str] = None):
    """Configure root logging for long-running processes."""
    logging.basicConfig(
        level=getattr(logging, (level or config.log_level), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Global config instance
config = Config()
