"""Configuration management for recordcache."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".recordcache"
_CONFIG_FILE = "config.toml"
_STORE_FILE = "cache.db"
_LOG_DIR = "logs"


def get_base_dir() -> Path:
    """Return the base directory for all recordcache runtime files (~/.recordcache/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class DaemonConfig(BaseModel):
    """Settings for the API server process."""

    api_port: int = Field(default=9848, description="Port for the HTTP API")
    log_level: str = Field(default="info", description="Logging level")


class DiscogsConfig(BaseModel):
    """Discogs account and HTTP client settings."""

    username: str = Field(default="", description="Collection owner refreshed by the scheduler")
    token: SecretStr = Field(default=SecretStr(""), description="Discogs personal access token")
    user_agent: str = Field(default="RecordCache/1.0", description="User-Agent sent with every request")
    base_url: str = Field(default="https://api.discogs.com", description="Discogs API base URL")
    timeout_seconds: float = Field(default=10.0, description="Per-request HTTP timeout")


class CacheConfig(BaseModel):
    """Settings for the page cache and the incremental scanner."""

    page_size: int = Field(default=50, ge=1, description="Items per cached page")
    valid_hours: int = Field(default=24, ge=1, description="Hours a cached page stays fresh")
    preload_fresh_hours: int = Field(default=12, ge=0, description="Skip a preload finished this recently")
    request_delay_seconds: float = Field(default=1.0, ge=0.0, description="Pause before each paged remote call")
    scan_page_limit: int = Field(default=10, ge=1, description="Max remote pages scanned for new items")
    orphan_probe_pages: int = Field(default=5, ge=0, description="Trailing pages probed for cleanup after a merge")

    @property
    def valid_ms(self) -> int:
        return self.valid_hours * 60 * 60 * 1000

    @property
    def preload_fresh_ms(self) -> int:
        return self.preload_fresh_hours * 60 * 60 * 1000


class SyncConfig(BaseModel):
    """Settings for the periodic refresh scheduler."""

    interval_minutes: int = Field(default=60, description="Minutes between refresh cycles")
    auto_refresh: bool = Field(default=True, description="Run the scheduler when serving")


class AppConfig(BaseModel):
    """Top-level application configuration."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    discogs: DiscogsConfig = Field(default_factory=DiscogsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def store_path(self) -> Path:
        return self.base_dir / _STORE_FILE

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    def is_discogs_configured(self) -> bool:
        """Return True if a Discogs token is set."""
        return bool(self.discogs.token.get_secret_value())


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, SecretStr):
        raw = value.get_secret_value()
        escaped = raw.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string.

    Only handles the flat two-level structure we actually use (tables with
    scalar values).
    """
    lines: list[str] = []
    sections = [
        ("daemon", config.daemon),
        ("discogs", config.discogs),
        ("cache", config.cache),
        ("sync", config.sync),
    ]
    for section_name, section_model in sections:
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            lines.append(f"{key} = {_format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
