"""
Nexus Range - VM Fleet Configuration
Pydantic Settings with environment variable support
"""

import ipaddress
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FleetSettings(BaseSettings):
    """Fleet settings loaded from NEXUS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="NEXUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Addressing
    # ==========================================================================
    network_range: str = "192.168.100.0/24"
    base_ip_start: int = Field(default=10, ge=1)
    tier_block_size: int = Field(default=10, ge=1)

    @field_validator("network_range")
    @classmethod
    def validate_network_range(cls, v: str) -> str:
        network = ipaddress.ip_network(v, strict=True)
        if network.version != 4:
            raise ValueError("network_range must be an IPv4 network")
        return str(network)

    # ==========================================================================
    # Health monitoring & recovery
    # ==========================================================================
    health_check_interval: float = Field(default=30.0, gt=0)  # seconds
    probe_timeout: float = Field(default=2.0, gt=0)
    max_restart_attempts: int = Field(default=3, ge=0)

    # ==========================================================================
    # Hypervisor
    # ==========================================================================
    libvirt_uri: str = "qemu:///system"
    libvirt_network: str = "default"
    boot_grace_period: float = Field(default=10.0, ge=0)
    graceful_stop_timeout: float = Field(default=5.0, ge=0)
    snapshot_timeout: float = Field(default=120.0, gt=0)
    command_timeout: float = Field(default=60.0, gt=0)

    # ==========================================================================
    # Alerting
    # ==========================================================================
    alert_webhook_url: Optional[str] = None
    alert_timeout: float = Field(default=5.0, gt=0)

    # ==========================================================================
    # Logging
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "json"


@lru_cache
def get_settings() -> FleetSettings:
    """Get cached settings instance."""
    return FleetSettings()
