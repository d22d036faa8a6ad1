"""Shared fixtures for ytmb tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from ytmb.storage import Database


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all ytmb runtime files to a temporary directory.

    Patches ``ytmb.config.get_base_dir`` so that nothing touches the real
    ``~/.ytmb/``.
    """
    fake_base = tmp_path / ".ytmb"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("ytmb.config.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    """Provide a fresh on-disk database for each test."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()
