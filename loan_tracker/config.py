"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class TrackerConfig(BaseSettings):
    """Loan tracker configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    database_path: str = "loan_tracker.db"

    # Proof-of-payment storage
    receipts_base_url: str = ""  # Empty = keep receipts in memory
    receipts_bucket: str = "receipts"
    receipts_api_key: str = ""
    max_proof_size_bytes: int = 5 * 1024 * 1024  # 5MB

    # Network behaviour
    request_timeout_seconds: float = 30.0
    loan_update_retries: int = 2

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    base_currency: str = "USD"
    interest_category_name: str = "Loan Interest"
    interest_category_color: str = "#DC2626"
    loan_number_prefix: str = "LN"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_TRACKER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = TrackerConfig()


def get_config() -> TrackerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TrackerConfig:
    """Reload configuration from environment"""
    global config
    config = TrackerConfig()
    return config
