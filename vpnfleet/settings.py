# vpnfleet/settings.py
import ipaddress
from functools import lru_cache
from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Fleet core settings with environment variable support and validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,  # Immutable settings, shared by every backend instance
    )

    # Command execution (local subprocess and SSH)
    command_timeout: Annotated[float, Field(ge=1.0, le=600.0)] = 30.0
    ssh_connect_timeout: Annotated[float, Field(ge=1.0, le=120.0)] = 20.0
    ssh_default_port: Annotated[int, Field(ge=1, le=65535)] = 22

    # HTTP client settings (Outline management API)
    http_timeout: Annotated[float, Field(ge=1.0, le=120.0)] = 10.0
    http_connect_timeout: Annotated[float, Field(ge=1.0, le=60.0)] = 5.0

    # WireGuard defaults, used when a server record leaves them unset
    wireguard_interface: str = "wg0"
    wireguard_ip_range: str = "10.0.0.0/24"
    wireguard_port: Annotated[int, Field(ge=1, le=65535)] = 51820
    handshake_window: Annotated[int, Field(ge=30, le=3600)] = 180
    client_dns: List[str] = ["8.8.8.8", "8.8.4.4"]
    persistent_keepalive: Annotated[int, Field(ge=0, le=600)] = 25

    # Outline defaults
    outline_api_port: Annotated[int, Field(ge=1, le=65535)] = 8081
    outline_suspend_limit_bytes: Annotated[int, Field(ge=1, le=1024 * 1024)] = 1024

    # Cache settings (server public key lookups)
    cache_ttl: Annotated[int, Field(ge=10, le=3600)] = 300

    # Reconciliation scheduler
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    health_check_interval: Annotated[int, Field(ge=10, le=86400)] = 300
    usage_sync_interval: Annotated[int, Field(ge=10, le=86400)] = 300
    limit_enforcement_interval: Annotated[int, Field(ge=10, le=86400)] = 600
    expiration_cron: str = "0 0 * * *"
    server_operation_timeout: Annotated[float, Field(gt=0, le=600.0)] = 60.0

    # QR code rendering
    qr_box_size: Annotated[int, Field(ge=1, le=50)] = 10
    qr_border: Annotated[int, Field(ge=0, le=10)] = 1

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    # Application settings
    app_name: str = "VPN Fleet Core"
    app_version: str = "1.0.0"
    debug: bool = False

    @field_validator("wireguard_ip_range")
    @classmethod
    def validate_ip_range(cls, v: str) -> str:
        """Only IPv4 ranges can be allocated from."""
        try:
            network = ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid CIDR range: {v}") from e
        if network.version != 4:
            raise ValueError("Only IPv4 ranges are supported")
        return v

    @field_validator("expiration_cron")
    @classmethod
    def validate_expiration_cron(cls, v: str) -> str:
        """Expect a standard 5-field crontab expression."""
        if len(v.split()) != 5:
            raise ValueError("expiration_cron must have 5 fields (minute hour day month weekday)")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in {"text", "json"}:
            raise ValueError("log_format must be 'text' or 'json'")
        return v


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance for performance."""
    return Settings()


settings = get_settings()
