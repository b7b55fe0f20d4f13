"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerConfig(BaseSettings):
    """Account ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///ledger.db"  # memory://, sqlite:///path or postgresql://...
    database_pool_size: int = 5
    database_pool_timeout: float = 30.0  # seconds to wait for a free connection
    store_timeout_seconds: float = 5.0  # per round-trip

    # Debit concurrency control
    debit_max_retries: int = 5
    debit_retry_backoff_ms: int = 5  # upper bound of the random pause between attempts

    # Business rules configuration
    closed_account_terminal: bool = True
    default_daily_transfer_limit: str = "10000.00"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
