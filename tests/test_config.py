"""Tests for ytmb.config module."""

from __future__ import annotations

import os
import stat
import tomllib
from pathlib import Path

import pytest
from pydantic import ValidationError

from ytmb.config import (
    AppConfig,
    StorageConfig,
    SyncConfig,
    YTMusicConfig,
    _dump_toml,
    _format_toml_value,
    config_exists,
    ensure_dirs,
    load_config,
    save_config,
)

# ---------------------------------------------------------------------------
# 1. Default values
# ---------------------------------------------------------------------------


def test_sync_config_defaults():
    cfg = SyncConfig()
    assert cfg.handle_mirror is True
    assert cfg.fetch_concurrency == 4
    assert cfg.max_retries == 3
    assert cfg.retry_backoff_seconds == 1.0
    assert cfg.mirror_batch_size == 50


def test_app_config_defaults():
    cfg = AppConfig()
    assert cfg.storage.db_path == ""
    assert cfg.ytmusic.auth_file == ""
    assert cfg.ytmusic.request_timeout_seconds == 30.0
    assert cfg.logging.log_level == "info"


@pytest.mark.parametrize(
    "kwargs",
    [{"fetch_concurrency": 0}, {"max_retries": 0}, {"retry_backoff_seconds": -1}, {"mirror_batch_size": 0}],
)
def test_sync_config_rejects_out_of_range(kwargs):
    with pytest.raises(ValidationError):
        SyncConfig(**kwargs)


def test_timeout_must_be_positive():
    with pytest.raises(ValidationError):
        YTMusicConfig(request_timeout_seconds=0)


# ---------------------------------------------------------------------------
# 2. AppConfig properties (use base_dir fixture)
# ---------------------------------------------------------------------------


def test_base_dir_property(base_dir: Path):
    assert AppConfig().base_dir == base_dir


def test_db_path_defaults_under_base_dir(base_dir: Path):
    assert AppConfig().db_path == base_dir / "library.db"


def test_db_path_override(base_dir: Path, tmp_path: Path):
    cfg = AppConfig(storage=StorageConfig(db_path=str(tmp_path / "elsewhere.db")))
    assert cfg.db_path == tmp_path / "elsewhere.db"


def test_log_dir(base_dir: Path):
    assert AppConfig().log_dir == base_dir / "logs"


def test_is_ytmusic_configured(tmp_path: Path):
    auth = tmp_path / "browser.json"
    assert AppConfig().is_ytmusic_configured() is False
    cfg = AppConfig(ytmusic=YTMusicConfig(auth_file=str(auth)))
    assert cfg.is_ytmusic_configured() is False
    auth.write_text("{}")
    assert cfg.is_ytmusic_configured() is True


# ---------------------------------------------------------------------------
# 3. ensure_dirs / config_exists
# ---------------------------------------------------------------------------


def test_ensure_dirs_creates_directories(base_dir: Path, tmp_path: Path, monkeypatch):
    fresh = tmp_path / "fresh_base"
    monkeypatch.setattr("ytmb.config.get_base_dir", lambda: fresh)

    assert not fresh.exists()
    ensure_dirs()
    assert fresh.is_dir()
    assert (fresh / "logs").is_dir()


def test_config_exists_false_when_missing(base_dir: Path):
    assert config_exists() is False


def test_config_exists_true_when_file_present(base_dir: Path):
    (base_dir / "config.toml").write_text("")
    assert config_exists() is True


# ---------------------------------------------------------------------------
# 4. save_config / load_config
# ---------------------------------------------------------------------------


def test_load_config_no_file_returns_defaults(base_dir: Path):
    assert load_config() == AppConfig()


def test_save_load_round_trip_custom(base_dir: Path):
    original = AppConfig(
        sync=SyncConfig(handle_mirror=False, max_retries=5, retry_backoff_seconds=0.5),
        ytmusic=YTMusicConfig(auth_file="~/yt/browser.json", request_timeout_seconds=10.0),
    )
    save_config(original)
    loaded = load_config()

    assert loaded.sync.handle_mirror is False
    assert loaded.sync.max_retries == 5
    assert loaded.sync.retry_backoff_seconds == 0.5
    assert loaded.ytmusic.auth_file == "~/yt/browser.json"
    assert loaded.ytmusic.request_timeout_seconds == 10.0


def test_load_config_partial_file(base_dir: Path):
    (base_dir / "config.toml").write_text("[sync]\nhandle_mirror = false\n")
    cfg = load_config()
    assert cfg.sync.handle_mirror is False
    assert cfg.sync.max_retries == 3


def test_load_config_invalid_value(base_dir: Path):
    (base_dir / "config.toml").write_text("[sync]\nmirror_batch_size = 0\n")
    with pytest.raises(ValidationError):
        load_config()


def test_save_config_sets_permissions(base_dir: Path):
    save_config(AppConfig())
    mode = stat.S_IMODE(os.stat(base_dir / "config.toml").st_mode)
    assert mode == 0o600


# ---------------------------------------------------------------------------
# 5. TOML helpers
# ---------------------------------------------------------------------------


def test_format_toml_value_string_with_quotes():
    assert _format_toml_value('say "hi"') == '"say \\"hi\\""'


def test_format_toml_value_string_with_backslash():
    assert _format_toml_value("back\\slash") == '"back\\\\slash"'


def test_format_toml_value_numbers_and_bools():
    assert _format_toml_value(42) == "42"
    assert _format_toml_value(1.5) == "1.5"
    assert _format_toml_value(True) == "true"
    assert _format_toml_value(False) == "false"


def test_format_toml_value_unsupported_type():
    with pytest.raises(TypeError, match="Unsupported TOML value type"):
        _format_toml_value([1, 2, 3])


def test_dump_toml_round_trips_defaults():
    cfg = AppConfig()
    parsed = tomllib.loads(_dump_toml(cfg))

    assert set(parsed) == {"sync", "storage", "ytmusic", "logging"}
    assert AppConfig.model_validate(parsed) == cfg
