"""
Configuration management.

Uses Pydantic Settings for environment variable handling and validation.
Values can be seeded from a config.yaml file; environment variables win.
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

SeverityName = Literal["debug", "info", "warning", "error"]


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        config_path = os.environ.get("GATEKEEPER_CONFIG_FILE")

    if config_path is None:
        possible_paths = [
            "config.yaml",
            "../../config.yaml",
        ]
        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


class CacheSettings(BaseSettings):
    """Computation cache configuration."""

    backend: Literal["memory", "file", "sql"] = Field(default="memory", description="Cache store backend")
    directory: Path = Field(default=Path("./cache"), description="Directory for the file backend")
    default_ttl: float = Field(default=300.0, description="Default TTL in seconds")
    max_entries: int = Field(default=1024, description="Capacity of the memory backend")
    join_timeout: float = Field(default=30.0, description="Seconds a caller waits on an in-flight computation")
    namespace_version: int = Field(default=1, description="Entries written under another version are ignored")
    market_ttl: float = Field(default=300.0, description="TTL for market data")
    news_ttl: float = Field(default=1800.0, description="TTL for news data")

    @field_validator("max_entries")
    def validate_max_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_entries must be at least 1")
        return v

    class Config:
        env_prefix = "GATEKEEPER_CACHE_"


class RateLimitSettings(BaseSettings):
    """Request admission configuration."""

    enabled: bool = Field(default=True, description="Enable rate limiting")
    capacity: int = Field(default=60, description="Requests allowed per window")
    window_seconds: float = Field(default=60.0, description="Window length in seconds")
    identity: Literal["ip", "api_key", "user_id"] = Field(default="ip", description="Client identity source")
    fail_open: bool = Field(default=False, description="Admit requests when the window store is down")
    backend: Literal["memory", "sql"] = Field(default="memory", description="Window store backend")
    api_key_header: str = Field(default="X-API-Key", description="Header carrying the client API key")

    @field_validator("capacity")
    def validate_capacity(cls, v: int) -> int:
        if v < 0:
            raise ValueError("capacity cannot be negative")
        return v

    @field_validator("window_seconds")
    def validate_window(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("window_seconds must be positive")
        return v

    class Config:
        env_prefix = "GATEKEEPER_RATE_LIMIT_"


class LoggingSettings(BaseSettings):
    """Fan-out logger configuration."""

    min_severity: SeverityName = Field(default="info", description="Records below this are dropped")

    file_enabled: bool = Field(default=True, description="Write records to daily log files")
    directory: Path = Field(default=Path("./logs"), description="Directory for log files")

    database_enabled: bool = Field(default=False, description="Insert records into system_logs")

    syslog_enabled: bool = Field(default=False, description="Forward records to syslog")
    syslog_address: str = Field(default="/dev/log", description="Unix socket path or host:port")
    syslog_min_severity: SeverityName = Field(default="error", description="Lowest severity sent to syslog")

    email_enabled: bool = Field(default=False, description="Mail error records")
    email_to: str = Field(default="admin@cryptinvest.com")
    email_from: str = Field(default="no-reply@cryptinvest.com")
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=587)
    smtp_username: Optional[str] = Field(default=None)
    smtp_password: Optional[str] = Field(default=None)
    smtp_starttls: bool = Field(default=True)
    smtp_timeout_seconds: float = Field(default=10.0)

    class Config:
        env_prefix = "GATEKEEPER_LOGGING_"


class DatabaseSettings(BaseSettings):
    """Relational store shared by the SQL backends and the database sink."""

    url: str = Field(default="sqlite:///./gatekeeper.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Echo SQL statements")

    class Config:
        env_prefix = "GATEKEEPER_DATABASE_"


class UpstreamSettings(BaseSettings):
    """External market and news APIs."""

    market_base_url: str = Field(default="https://api.coingecko.com/api/v3")
    market_api_key: Optional[str] = Field(default=None)
    news_base_url: str = Field(default="https://min-api.cryptocompare.com/data/v2")
    news_api_key: Optional[str] = Field(default=None)
    timeout_seconds: float = Field(default=10.0, description="Request timeout")

    class Config:
        env_prefix = "GATEKEEPER_UPSTREAM_"


class SecuritySettings(BaseSettings):
    """Security-related configuration."""

    admin_token: str = Field(default="", description="Admin token for cache and rate-limit administration")

    class Config:
        env_prefix = "GATEKEEPER_SECURITY_"


class Settings(BaseSettings):
    """Main application settings."""

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Process log level")
    app_name: str = Field(default="CryptInvest API", description="Name used in alert mails")
    environment: str = Field(default="development", description="Deployment environment")
    purge_interval_seconds: float = Field(
        default=60.0, description="Seconds between expiry purges of the cache and rate windows; 0 disables"
    )

    # Component settings
    cache: CacheSettings = Field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    class Config:
        env_prefix = "GATEKEEPER_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    return Settings()


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    for section, values in config_data.items():
        if not isinstance(values, dict):
            continue

        if section == "server":
            prefix = "GATEKEEPER_"
        else:
            prefix = f"GATEKEEPER_{section.upper()}_"

        for key, value in values.items():
            env_var = f"{prefix}{key.upper()}"
            if env_var in os.environ or value is None:
                continue
            if isinstance(value, (dict, list)):
                os.environ[env_var] = json.dumps(value)
            else:
                os.environ[env_var] = str(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
