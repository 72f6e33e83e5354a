"""
Engine Configuration Module

CDT engine settings read from CDT_* environment variables (or a .env file)
through pydantic-settings: backends, cache TTLs, logging and business rules.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class CdtConfig(BaseSettings):
    """CDT lifecycle engine configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "cdt.db"

    # Cache configuration
    cache_backend: str = "memory"  # memory or redis
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "cdt-core:"
    cache_ttl_certificate_seconds: int = 600  # Per-entity lookups change rarely
    cache_ttl_list_seconds: int = 300
    cache_ttl_pending_seconds: int = 60  # Review queue is volatile
    cache_ttl_stats_seconds: int = 120

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset

    # Business rules configuration (COP)
    min_amount: Decimal = Decimal("500000")
    max_amount: Decimal = Decimal("500000000")
    min_term_days: int = 30
    max_term_days: int = 730
    min_interest_rate: Decimal = Decimal("0.5")  # % annual
    max_interest_rate: Decimal = Decimal("9.5")
    days_per_month: int = 30
    max_start_offset_days: int = 30

    # Query configuration
    default_page_size: int = 20

    model_config = SettingsConfigDict(
        env_prefix="CDT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


# Process-wide settings
config = CdtConfig()


def get_config() -> CdtConfig:
    """Shared settings instance"""
    return config


def reload_config() -> CdtConfig:
    """Re-read the environment and replace the shared settings"""
    global config
    config = CdtConfig()
    return config
