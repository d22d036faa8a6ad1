"""Maintain the ``ytmb-all`` mirror playlist on the remote catalog.

The mirror holds every track in the store.  It is additive: tracks are
appended remotely and linked locally, never removed remotely.  This is the
only module that performs remote writes.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import structlog

from ytmb.storage.models import MIRROR_PLAYLIST_TITLE, Playlist
from ytmb.sync.remote import RetryPolicy, retry_remote

if TYPE_CHECKING:
    from ytmb.storage.database import Database
    from ytmb.sync.remote import PlaylistSnapshot, RemoteCatalog

log = structlog.get_logger(__name__)

_DEFAULT_BATCH_SIZE = 50


@dataclass
class MirrorReport:
    added: int = 0
    already_present: int = 0
    remote_id: str | None = None
    created_remote: bool = False
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class MirrorPlaylistBuilder:
    """Push every stored track that the mirror playlist lacks."""

    def __init__(
        self,
        db: Database,
        catalog: RemoteCatalog,
        *,
        retry: RetryPolicy | None = None,
        batch_size: int = _DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._db = db
        self._catalog = catalog
        self._retry = retry or RetryPolicy()
        self._batch_size = batch_size

    async def ensure_mirror(
        self,
        known_playlists: list[PlaylistSnapshot] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> MirrorReport:
        """Make the mirror playlist contain every stored track.

        *known_playlists* are remote playlist headers already fetched this
        run; when omitted they are fetched here.  *should_stop* is polled
        before each batch; a true result leaves the rest for the next run.
        """
        stop = should_stop or (lambda: False)
        report = MirrorReport()
        report.remote_id = await self._ensure_remote(known_playlists, report)
        mirror = await self._ensure_local(report.remote_id)

        if not report.created_remote:
            await self._seed_from_remote(mirror)

        missing = await self._db.list_tracks_missing_from(mirror.id)
        report.already_present = await self._db.count("track") - len(missing)

        for start in range(0, len(missing), self._batch_size):
            if stop():
                report.cancelled = True
                log.info("mirror_cancelled", added=report.added, remaining=len(missing) - start)
                break
            batch = missing[start : start + self._batch_size]
            ids = [t.external_id for t in batch]
            await retry_remote(
                lambda ids=ids: self._catalog.add_tracks_to_playlist(report.remote_id, ids),
                self._retry,
                operation="add_tracks_to_playlist",
            )
            async with self._db.transaction() as tx:
                position = await self._db.next_position(mirror.id, tx=tx)
                for offset, track in enumerate(batch):
                    await self._db.link(
                        tx, "playlist_track", mirror.id, track.id, {"position": position + offset}
                    )
            report.added += len(batch)
            log.info("mirror_batch_pushed", count=len(batch), total_added=report.added)

        log.info(
            "mirror_done",
            added=report.added,
            already_present=report.already_present,
            created_remote=report.created_remote,
        )
        return report

    async def _ensure_remote(
        self,
        known_playlists: list[PlaylistSnapshot] | None,
        report: MirrorReport,
    ) -> str:
        if known_playlists is None:
            known_playlists = await retry_remote(
                self._catalog.fetch_playlists, self._retry, operation="fetch_playlists"
            )
        candidates = [
            p.remote_id for p in known_playlists if p.title == MIRROR_PLAYLIST_TITLE and p.remote_id
        ]
        local = await self._db.get_mirror_playlist()
        if local is not None and local.external_id in candidates:
            return local.external_id
        if candidates:
            return candidates[0]

        # Creation is not idempotent, so it is attempted once.
        remote_id = await self._catalog.create_playlist(MIRROR_PLAYLIST_TITLE)
        report.created_remote = True
        log.info("mirror_remote_created", remote_id=remote_id)
        return remote_id

    async def _ensure_local(self, remote_id: str) -> Playlist:
        async with self._db.transaction() as tx:
            mirror = await self._db.get_mirror_playlist(tx=tx)
            if mirror is None:
                mirror, _ = await self._db.get_or_create(
                    tx,
                    "playlist",
                    {"is_mirror": True},
                    {"title": MIRROR_PLAYLIST_TITLE, "external_id": remote_id},
                )
                log.info("mirror_local_created", playlist_id=mirror.id)
            elif mirror.external_id != remote_id:
                # A different remote playlist starts out empty.
                dropped = await self._db.unlink_missing(
                    tx, "playlist_track", owner="playlist_id", owner_id=mirror.id
                )
                mirror = await self._db.update(tx, "playlist", mirror.id, {"external_id": remote_id})
                log.warning("mirror_remote_replaced", remote_id=remote_id, dropped=dropped)
        return mirror

    async def _seed_from_remote(self, mirror: Playlist) -> None:
        """Link tracks the remote mirror already holds so they are not pushed again."""
        remote_tracks = await retry_remote(
            lambda: self._catalog.fetch_playlist_tracks(mirror.external_id),
            self._retry,
            operation="fetch_playlist_tracks",
        )
        seeded = 0
        async with self._db.transaction() as tx:
            linked = await self._db.get_playlist_positions(mirror.id, tx=tx)
            position = await self._db.next_position(mirror.id, tx=tx)
            for record in remote_tracks:
                if not record.external_id:
                    continue
                track = await self._db.find("track", {"external_id": record.external_id}, tx=tx)
                if track is None or track.id in linked:
                    continue
                await self._db.link(tx, "playlist_track", mirror.id, track.id, {"position": position})
                linked[track.id] = position
                position += 1
                seeded += 1
        if seeded:
            log.info("mirror_seeded_from_remote", count=seeded)
