"""
Server Configuration Module

Manages fleet manager settings using Pydantic for validation.
"""

from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class ServerSettings(BaseSettings):
    """Fleet manager settings with validation."""

    # filesystem layout
    WG_CONFIG_DIR: Path = Field(default=Path("/etc/wireguard"), description="Directory holding <iface>.conf files")
    STATE_FILE: Optional[Path] = Field(default=Path("/var/lib/wgfleet/state.json"), description="Persisted record store")
    BACKUP_DIR: Optional[Path] = Field(default=None, description="Snapshot directory, defaults to <WG_CONFIG_DIR>/backups")

    # interface defaults
    INTERFACE_PREFIX: str = Field(default="wg", description="Name prefix of managed interfaces")
    DEFAULT_ADDRESS: str = Field(default="10.0.0.1/24", description="Address used when a config omits it")
    DEFAULT_LISTEN_PORT: int = Field(default=51820, ge=1024, le=65535)
    DEFAULT_MTU: int = Field(default=1420, ge=576, le=9000)
    DEFAULT_DNS: List[str] = Field(default_factory=lambda: ["8.8.8.8", "8.8.4.4"])
    DEFAULT_KEEPALIVE: int = Field(default=25, ge=0, le=300)
    ENDPOINT_HOST: Optional[str] = Field(default=None, description="Public host written into client configs")

    # external commands
    COMMAND_TIMEOUT: float = Field(default=10.0, gt=0, description="Timeout for wg/wg-quick/ip commands in seconds")
    RESTART_PAUSE: float = Field(default=1.0, ge=0, description="Pause between stop and start on restart")
    HANDSHAKE_WINDOW: int = Field(default=180, ge=1, description="Seconds a handshake counts as live")
    SYNC_WORKERS: int = Field(default=4, ge=1, description="Parallel interface syncs in a bulk sync")

    # mtu probing
    PROBE_TIMEOUT: float = Field(default=2.0, gt=0, description="Timeout of a single ping")
    PROBE_SETTLE_DELAY: float = Field(default=0.1, ge=0, description="Wait after changing the MTU")
    PROBE_STEP_DELAY: float = Field(default=0.2, ge=0, description="Wait between probe sizes")
    PROBE_CANDIDATE_DELAY: float = Field(default=0.5, ge=0, description="Wait between candidates")
    PROBE_TEST_HOST: str = Field(default="8.8.8.8", description="Default probe target")

    # profiles
    APPLIED_HISTORY_LIMIT: int = Field(default=50, ge=1, description="Entries kept in a profile's application log")

    # logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FILE: Optional[str] = Field(default=None, description="Log file path")

    model_config = SettingsConfigDict(
        env_prefix="WGFLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v

    @field_validator("INTERFACE_PREFIX")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not (v.isascii() and v.isalpha() and v.islower()):
            raise ValueError("interface prefix must be lowercase letters")
        return v

    @property
    def backup_dir(self) -> Path:
        return self.BACKUP_DIR or self.WG_CONFIG_DIR / "backups"

    def config_path(self, interface_name: str) -> Path:
        return self.WG_CONFIG_DIR / f"{interface_name}.conf"


@lru_cache()
def get_settings() -> ServerSettings:
    """Get cached settings instance."""
    return ServerSettings()
