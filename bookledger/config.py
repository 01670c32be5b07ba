"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Bookkeeping ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="BOOKLEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Storage configuration
    storage_type: str = "memory"  # memory, sqlite or postgresql
    database_url: Optional[str] = None  # PostgreSQL DSN
    sqlite_path: str = "bookledger.db"
    database_pool_size: int = 10
    database_command_timeout: float = 60.0
    journals_table: str = "journals"
    transactions_table: str = "transactions"

    # Bookkeeping rules
    decimal_places: int = Field(default=8, ge=0, le=18)
    account_delimiter: str = ":"
    default_per_page: int = Field(default=25, ge=1)

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
