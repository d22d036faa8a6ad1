"""End-to-end runs: engine, reconciler, mirror builder and a real SQLite store."""

from __future__ import annotations

import pytest

from fakes import FakeCatalog, playlist, track
from ytmb.config import AppConfig, SyncConfig
from ytmb.storage import Database
from ytmb.sync.engine import RunState, SyncEngine


def _engine(db: Database, catalog: FakeCatalog, *, handle_mirror: bool = True) -> SyncEngine:
    config = AppConfig(sync=SyncConfig(handle_mirror=handle_mirror, retry_backoff_seconds=0.0))
    return SyncEngine(config, db, catalog)


async def _mirror_external_ids(db: Database) -> list[str]:
    mirror = await db.get_mirror_playlist()
    result = []
    for pt in await db.list_playlist_tracks(mirror.id):
        result.append((await db.get("track", pt.track_id)).external_id)
    return result


@pytest.mark.asyncio
async def test_single_track_lifecycle(db: Database):
    t1 = track("v1", "Track One", album=("Album", "MPREb_1"), artists=(("Nova", "UC_nova"),))
    catalog = FakeCatalog([playlist("PL_1", "P1", t1)])
    engine = _engine(db, catalog)

    first = await engine.run_sync()

    assert first.state == RunState.DONE
    assert first.sync_report.created > 0
    stored = await db.find("track", {"external_id": "v1"})
    p1 = await db.find("playlist", {"external_id": "PL_1"})
    assert stored is not None
    assert await db.get_playlist_positions(p1.id) == {stored.id: 0}
    nova = await db.find("artist", {"external_id": "UC_nova"})
    assert await db.list_artist_ids_for_track(stored.id) == {nova.id}
    assert (await db.get("album", stored.album_id)).external_id == "MPREb_1"
    assert await _mirror_external_ids(db) == ["v1"]

    second = await engine.run_sync()

    assert second.sync_report.created == 0
    assert second.sync_report.updated == 0
    assert second.sync_report.removed == 0
    assert second.mirror_report.added == 0

    catalog.set_playlist(playlist("PL_1", "P1"))
    third = await engine.run_sync()

    assert third.state == RunState.DONE
    assert third.sync_report.removed >= 3
    assert await db.find("track", {"external_id": "v1"}) is None
    assert await db.count("album") == 0
    assert await db.count("artist") == 0
    assert await db.find("playlist", {"external_id": "PL_1"}) is None
    assert await _mirror_external_ids(db) == []
    # The remote mirror is additive.
    assert catalog.track_ids(third.mirror_report.remote_id) == ["v1"]


@pytest.mark.asyncio
async def test_track_on_another_playlist_survives_removal(db: Database):
    catalog = FakeCatalog(
        [
            playlist("PL_1", "P1", track("v1"), track("v2")),
            playlist("PL_2", "P2", track("v1")),
        ]
    )
    engine = _engine(db, catalog)
    await engine.run_sync()

    catalog.set_playlist(playlist("PL_1", "P1", track("v2")))
    outcome = await engine.run_sync()

    v1 = await db.find("track", {"external_id": "v1"})
    v2 = await db.find("track", {"external_id": "v2"})
    p1 = await db.find("playlist", {"external_id": "PL_1"})
    assert v1 is not None
    assert await db.get_playlist_positions(p1.id) == {v2.id: 0}
    assert sorted(await _mirror_external_ids(db)) == ["v1", "v2"]
    assert outcome.mirror_report.added == 0


@pytest.mark.asyncio
async def test_store_stays_unique_across_runs(db: Database):
    shared = track("v1", artists=(("Nova", "UC_nova"), ("Guest", None)))
    catalog = FakeCatalog(
        [
            playlist("PL_1", "P1", shared, track("v2"), shared),
            playlist("PL_2", "P2", track("v2"), shared),
        ]
    )
    engine = _engine(db, catalog)

    for _ in range(3):
        await engine.run_sync()

    assert await db.count("track") == 2
    assert await db.count("artist") == 3
    assert await db.count("album") == 1
    # PL_1: 2 distinct, PL_2: 2, mirror: 2
    assert await db.count("playlist_track") == 6
    assert len(catalog.created_titles) == 1
    assert sorted(catalog.track_ids(engine.last_outcome.mirror_report.remote_id)) == ["v1", "v2"]
