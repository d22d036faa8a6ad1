"""Configuration for ytmb.

Settings live in ``~/.ytmb/config.toml``; every section is optional and a
missing file means all defaults.  Credentials are not stored here, only the
path to a ytmusicapi auth file provisioned elsewhere.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field

_HOME_DIR = ".ytmb"
_CONFIG_NAME = "config.toml"
_DEFAULT_DB = "library.db"
_LOGS = "logs"


def get_base_dir() -> Path:
    """Root for ytmb's runtime files, ``~/.ytmb``."""
    return Path.home() / _HOME_DIR


def config_path() -> Path:
    return get_base_dir() / _CONFIG_NAME


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """Run configuration for :class:`ytmb.sync.engine.SyncEngine`."""

    handle_mirror: bool = Field(default=True, description="Maintain the ytmb-all mirror playlist")
    fetch_concurrency: int = Field(default=4, ge=1, description="Parallel remote reads while fetching")
    max_retries: int = Field(default=3, ge=1, description="Attempts per remote call on transient errors")
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0, description="Base delay, doubled per retry")
    mirror_batch_size: int = Field(default=50, ge=1, description="Tracks per mirror write call")


class StorageConfig(BaseModel):
    db_path: str = Field(default="", description="SQLite file; empty means ~/.ytmb/library.db")


class YTMusicConfig(BaseModel):
    auth_file: str = Field(default="", description="Path to a ytmusicapi auth file")
    request_timeout_seconds: float = Field(default=30.0, gt=0.0, description="Per-call timeout")


class LoggingConfig(BaseModel):
    log_level: str = Field(default="info", description="Logging level")


class AppConfig(BaseModel):
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    ytmusic: YTMusicConfig = Field(default_factory=YTMusicConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def db_path(self) -> Path:
        """The configured database file, or ``library.db`` under the base dir."""
        if not self.storage.db_path:
            return self.base_dir / _DEFAULT_DB
        return Path(self.storage.db_path).expanduser()

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOGS

    def is_ytmusic_configured(self) -> bool:
        """True when an auth file is configured and present on disk."""
        if not self.ytmusic.auth_file:
            return False
        return Path(self.ytmusic.auth_file).expanduser().is_file()


# ---------------------------------------------------------------------------
# Disk
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create ``~/.ytmb`` and its log directory, owner-only."""
    for directory in (get_base_dir(), get_base_dir() / _LOGS):
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    return config_path().is_file()


def load_config() -> AppConfig:
    """Read and validate the config file; defaults when it does not exist.

    Raises ``tomllib.TOMLDecodeError`` for unparsable files and
    ``pydantic.ValidationError`` for out-of-range values.
    """
    path = config_path()
    if not path.is_file():
        return AppConfig()
    return AppConfig.model_validate(tomllib.loads(path.read_text(encoding="utf-8")))


def _format_toml_value(value: object) -> str:
    """Render a scalar as a TOML literal."""
    # bool first: it is an int subclass.
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize *config* as one TOML table per section, scalars only."""
    chunks: list[str] = []
    for section in AppConfig.model_fields:
        values = getattr(config, section).model_dump(mode="python")
        body = "\n".join(f"{key} = {_format_toml_value(val)}" for key, val in values.items())
        chunks.append(f"[{section}]\n{body}\n")
    return "\n".join(chunks)


def save_config(config: AppConfig) -> None:
    """Write *config* to disk readable by the owner only."""
    ensure_dirs()
    path = config_path()
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
