"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class GateConfig(BaseSettings):
    """Access gate configuration"""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_GATE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///access_gate.db"  # memory://, sqlite:///path, postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Bearer token configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24 * 7
    reset_token_expiry_minutes: int = 15

    # Lockout policy
    max_failed_attempts: int = 5
    lockout_minutes: int = 15

    # Password policy
    password_min_length: int = 12
    password_symbols: str = '!@#$%^&*(),.?":{}|<>'
    password_history_depth: int = 5
    password_expiry_days: int = 90
    password_warning_days: List[int] = [7, 3, 1]
    scrypt_n: int = 16384

    # MFA
    mfa_code_length: int = 6
    mfa_code_ttl_seconds: int = 300
    mfa_max_attempts: int = 5

    # Expiry sweep schedule (UTC wall clock)
    sweep_enabled: bool = True
    sweep_hour: int = 2
    sweep_minute: int = 0

    # Identity defaults
    default_role: str = "profesor"
    seed_dynamic_policy: bool = True

    # Notifications
    notification_webhook_url: str = ""
    notification_workers: int = 2

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None

    # Audit
    enable_audit_logging: bool = True
    audit_authorization_decisions: bool = True


# Global configuration instance
config = GateConfig()


def get_config() -> GateConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> GateConfig:
    """Reload configuration from environment"""
    global config
    config = GateConfig()
    return config
