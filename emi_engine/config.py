"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class EmiEngineConfig(BaseSettings):
    """EMI engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="EMI_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///emi_engine.db"  # "memory://" for in-memory storage

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    default_currency: str = "BDT"
    default_grace_installments: int = 3  # overdue installments tolerated before default
    lock_timeout_seconds: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = EmiEngineConfig()


def get_config() -> EmiEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EmiEngineConfig:
    """Reload configuration from environment"""
    global config
    config = EmiEngineConfig()
    return config
