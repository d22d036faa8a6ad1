"""Converge the local store to a remote snapshot.

Work is applied in dependency order: library artists, library albums and
their tracks, then playlists and their memberships.  Every track (with its
album, artists and optional playlist membership) is written in its own
transaction, so a bad record costs one item and never leaves half a track
behind.  Once the whole snapshot is applied, memberships that disappeared
remotely are dropped and the orphan sweep removes what nothing references.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from ytmb.storage.database import PersistenceError
from ytmb.storage.models import MIRROR_PLAYLIST_TITLE, UNKNOWN_ALBUM_NAME, Album, Artist

if TYPE_CHECKING:
    from ytmb.storage.database import Database, Transaction
    from ytmb.sync.remote import (
        AlbumRecord,
        AlbumSnapshot,
        ArtistRecord,
        PlaylistSnapshot,
        RemoteSnapshot,
        TrackRecord,
    )

log = structlog.get_logger(__name__)


class MalformedRecordError(Exception):
    """Raised when a remote record lacks a field the store requires."""


@dataclass(frozen=True)
class ItemError:
    """One remote item that could not be applied."""

    kind: str
    key: str
    message: str


@dataclass
class SyncReport:
    created: int = 0
    updated: int = 0
    removed: int = 0
    errors: list[ItemError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.removed)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class _Delta:
    """Counts for one transaction, merged into the report only after commit."""

    created: int = 0
    updated: int = 0
    removed: int = 0

    def apply(self, report: SyncReport) -> None:
        report.created += self.created
        report.updated += self.updated
        report.removed += self.removed


def _require_track(record: TrackRecord) -> tuple[str, str]:
    if not record.external_id:
        raise MalformedRecordError(f"track {record.name!r} has no external id")
    if not record.name:
        raise MalformedRecordError(f"track {record.external_id} has no name")
    return record.external_id, record.name


def _has_album(record: AlbumRecord | None) -> bool:
    return record is not None and bool(record.name or record.external_id)


def _item_key(external_id: str | None, name: str | None) -> str:
    return external_id or name or "<unknown>"


class Reconciler:
    """Apply a :class:`RemoteSnapshot` to the store and report what changed."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def reconcile(
        self,
        snapshot: RemoteSnapshot,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> SyncReport:
        stop = should_stop or (lambda: False)
        report = SyncReport()
        log.info(
            "reconcile_start",
            playlists=len(snapshot.playlists),
            albums=len(snapshot.albums),
            artists=len(snapshot.artists),
        )

        saved_artists: set[int] = set()
        saved_albums: set[int] = set()
        seen_playlists: set[int] = set()

        for artist_record in snapshot.artists:
            if stop():
                return self._cancelled(report)
            await self._guard(
                report,
                "artist",
                _item_key(artist_record.external_id, artist_record.name),
                lambda r=artist_record: self._library_artist(r, report, saved_artists),
                protect=lambda r=artist_record: self._protect("artist", r.external_id, saved_artists),
            )

        for album_snapshot in snapshot.albums:
            if stop():
                return self._cancelled(report)
            if not await self._library_album(album_snapshot, report, saved_albums, stop):
                return self._cancelled(report)

        mirror = await self._db.get_mirror_playlist()
        mirror_remote_id = mirror.external_id if mirror else None
        for playlist_snapshot in snapshot.playlists:
            if playlist_snapshot.title == MIRROR_PLAYLIST_TITLE:
                continue
            if mirror_remote_id and playlist_snapshot.remote_id == mirror_remote_id:
                continue
            if not playlist_snapshot.tracks and playlist_snapshot.remote_id:
                log.debug("playlist_empty_skipped", remote_id=playlist_snapshot.remote_id)
                continue
            if stop():
                return self._cancelled(report)
            if not await self._playlist(playlist_snapshot, report, seen_playlists, stop):
                return self._cancelled(report)

        await self._drop_missing_playlists(seen_playlists, report)
        await self._clear_library_flags(saved_artists, saved_albums, report)

        async with self._db.transaction() as tx:
            sweep = await self._db.delete_unreferenced(tx)
        report.removed += sweep.entities + sweep.links

        log.info(
            "reconcile_done",
            created=report.created,
            updated=report.updated,
            removed=report.removed,
            errors=len(report.errors),
        )
        return report

    # -- isolation ------------------------------------------------------------

    async def _guard(
        self,
        report: SyncReport,
        kind: str,
        key: str,
        unit: Callable[[], Awaitable[Any]],
        *,
        protect: Callable[[], Awaitable[None]] | None = None,
    ) -> Any:
        """Run one item; record its failure instead of aborting the run.

        Storage failures are not item failures and always propagate.
        """
        try:
            return await unit()
        except PersistenceError:
            raise
        except Exception as exc:
            log.warning("reconcile_item_error", kind=kind, key=key, error=str(exc))
            report.errors.append(ItemError(kind=kind, key=key, message=str(exc)))
            if protect is not None:
                await protect()
            return None

    async def _protect(self, kind: str, external_id: str | None, keep: set[int]) -> None:
        """Keep an existing row alive when its remote item failed this run."""
        if not external_id:
            return
        existing = await self._db.find(kind, {"external_id": external_id})
        if existing is not None:
            keep.add(existing.id)

    def _cancelled(self, report: SyncReport) -> SyncReport:
        report.cancelled = True
        log.warning("reconcile_cancelled", created=report.created, updated=report.updated)
        return report

    # -- library --------------------------------------------------------------

    async def _library_artist(
        self,
        record: ArtistRecord,
        report: SyncReport,
        saved: set[int],
    ) -> None:
        delta = _Delta()
        async with self._db.transaction() as tx:
            artist = await self._resolve_artist(tx, record, delta, user_saved=True)
        delta.apply(report)
        saved.add(artist.id)

    async def _library_album(
        self,
        snapshot: AlbumSnapshot,
        report: SyncReport,
        saved: set[int],
        stop: Callable[[], bool],
    ) -> bool:
        """Apply one saved album and its tracks. Returns False if stopped."""
        record = snapshot.album

        async def header() -> Album:
            delta = _Delta()
            async with self._db.transaction() as tx:
                album = await self._resolve_album(tx, record, delta, user_saved=True)
            delta.apply(report)
            return album

        album = await self._guard(
            report,
            "album",
            _item_key(record.external_id, record.name),
            header,
            protect=lambda: self._protect("album", record.external_id, saved),
        )
        if album is None:
            return True
        saved.add(album.id)

        for track_record in snapshot.tracks:
            if stop():
                return False
            await self._guard(
                report,
                "track",
                _item_key(track_record.external_id, track_record.name),
                lambda r=track_record: self._track_unit(r, report, album=album),
            )
        return True

    async def _clear_library_flags(
        self,
        saved_artists: set[int],
        saved_albums: set[int],
        report: SyncReport,
    ) -> None:
        """Un-flag artists and albums that left the remote library."""
        delta = _Delta()
        async with self._db.transaction() as tx:
            for kind, keep in (("artist", saved_artists), ("album", saved_albums)):
                for row in await self._db.list_entities(kind, tx=tx):
                    if row.user_saved and row.id not in keep:
                        await self._db.update(tx, kind, row.id, {"user_saved": False})
                        delta.updated += 1
        delta.apply(report)

    # -- playlists ------------------------------------------------------------

    async def _playlist(
        self,
        snapshot: PlaylistSnapshot,
        report: SyncReport,
        seen: set[int],
        stop: Callable[[], bool],
    ) -> bool:
        """Apply one playlist and its memberships. Returns False if stopped."""

        async def header() -> int:
            if not snapshot.remote_id or not snapshot.title:
                raise MalformedRecordError(
                    f"playlist {snapshot.title!r} ({snapshot.remote_id!r}) lacks an id or title"
                )
            delta = _Delta()
            async with self._db.transaction() as tx:
                playlist, created = await self._db.get_or_create(
                    tx,
                    "playlist",
                    {"external_id": snapshot.remote_id},
                    {"title": snapshot.title},
                )
                if created:
                    delta.created += 1
                elif playlist.title != snapshot.title:
                    await self._db.update(tx, "playlist", playlist.id, {"title": snapshot.title})
                    delta.updated += 1
            delta.apply(report)
            return playlist.id

        playlist_id = await self._guard(
            report,
            "playlist",
            _item_key(snapshot.remote_id, snapshot.title),
            header,
            protect=lambda: self._protect("playlist", snapshot.remote_id, seen),
        )
        if playlist_id is None:
            return True
        seen.add(playlist_id)

        members: set[int] = set()
        visited: set[str] = set()
        for position, record in enumerate(snapshot.tracks):
            if record.external_id and record.external_id in visited:
                continue
            if stop():
                return False
            if record.external_id:
                visited.add(record.external_id)
            track_id = await self._guard(
                report,
                "track",
                _item_key(record.external_id, record.name),
                lambda r=record, p=position: self._track_unit(
                    r, report, playlist_id=playlist_id, position=p
                ),
                protect=lambda r=record: self._protect("track", r.external_id, members),
            )
            if track_id is not None:
                members.add(track_id)

        async with self._db.transaction() as tx:
            removed = await self._db.unlink_missing(
                tx, "playlist_track", owner="playlist_id", owner_id=playlist_id, keep=members
            )
        report.removed += removed
        return True

    async def _drop_missing_playlists(self, seen: set[int], report: SyncReport) -> None:
        """Empty every regular playlist the remote no longer has."""
        async with self._db.transaction() as tx:
            for playlist in await self._db.list_entities("playlist", tx=tx):
                if playlist.is_mirror or playlist.id in seen:
                    continue
                removed = await self._db.unlink_missing(
                    tx, "playlist_track", owner="playlist_id", owner_id=playlist.id
                )
                if removed:
                    log.info("playlist_gone", title=playlist.title, memberships=removed)
                report.removed += removed

    # -- tracks ---------------------------------------------------------------

    async def _track_unit(
        self,
        record: TrackRecord,
        report: SyncReport,
        *,
        album: Album | None = None,
        playlist_id: int | None = None,
        position: int | None = None,
    ) -> int:
        """Write one track with its album, artists and optional membership."""
        external_id, name = _require_track(record)
        delta = _Delta()
        async with self._db.transaction() as tx:
            existing = await self._db.find("track", {"external_id": external_id}, tx=tx)
            if album is not None:
                album_id = album.id
            elif _has_album(record.album) or existing is None:
                album_id = (await self._resolve_album(tx, record.album, delta)).id
            else:
                album_id = existing.album_id

            track, created = await self._db.get_or_create(
                tx,
                "track",
                {"external_id": external_id},
                {"name": name, "album_id": album_id},
            )
            if created:
                delta.created += 1
            else:
                changes = {
                    col: value
                    for col, value in (("name", name), ("album_id", album_id))
                    if getattr(track, col) != value
                }
                if changes:
                    track = await self._db.update(tx, "track", track.id, changes)
                    delta.updated += 1

            if record.artists:
                artist_ids: set[int] = set()
                for artist_record in record.artists:
                    artist = await self._resolve_artist(tx, artist_record, delta)
                    artist_ids.add(artist.id)
                    if await self._db.link(tx, "artist_track", artist.id, track.id):
                        delta.created += 1
                delta.removed += await self._db.unlink_missing(
                    tx, "artist_track", owner="track_id", owner_id=track.id, keep=artist_ids
                )

            if playlist_id is not None:
                if await self._db.link(
                    tx, "playlist_track", playlist_id, track.id, {"position": position}
                ):
                    delta.created += 1
                elif await self._db.set_position(tx, playlist_id, track.id, position):
                    delta.updated += 1

        delta.apply(report)
        return track.id

    async def _resolve_artist(
        self,
        tx: Transaction,
        record: ArtistRecord,
        delta: _Delta,
        *,
        user_saved: bool = False,
    ) -> Artist:
        if not record.name:
            raise MalformedRecordError(f"artist {record.external_id!r} has no name")
        key = (
            {"external_id": record.external_id}
            if record.external_id
            else {"external_id": None, "name": record.name}
        )
        artist, created = await self._db.get_or_create(
            tx, "artist", key, {"name": record.name, "user_saved": user_saved}
        )
        if created:
            delta.created += 1
            return artist
        changes: dict[str, Any] = {}
        if artist.name != record.name:
            changes["name"] = record.name
        if user_saved and not artist.user_saved:
            changes["user_saved"] = True
        if changes:
            artist = await self._db.update(tx, "artist", artist.id, changes)
            delta.updated += 1
        return artist

    async def _resolve_album(
        self,
        tx: Transaction,
        record: AlbumRecord | None,
        delta: _Delta,
        *,
        user_saved: bool = False,
    ) -> Album:
        if not _has_album(record):
            key: dict[str, Any] = {"external_id": None, "name": UNKNOWN_ALBUM_NAME}
            name = UNKNOWN_ALBUM_NAME
        elif not record.name:
            raise MalformedRecordError(f"album {record.external_id!r} has no name")
        elif record.external_id:
            key = {"external_id": record.external_id}
            name = record.name
        else:
            key = {"external_id": None, "name": record.name}
            name = record.name

        album, created = await self._db.get_or_create(
            tx, "album", key, {"name": name, "user_saved": user_saved}
        )
        if created:
            delta.created += 1
            return album
        changes: dict[str, Any] = {}
        if album.name != name:
            changes["name"] = name
        if user_saved and not album.user_saved:
            changes["user_saved"] = True
        if changes:
            album = await self._db.update(tx, "album", album.id, changes)
            delta.updated += 1
        return album
