"""Async SQLite entity store for the ytmb library mirror."""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
from collections.abc import AsyncIterator, Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
import structlog
from pydantic import BaseModel

from ytmb.storage.models import (
    Album,
    Artist,
    AssociationKind,
    EntityKind,
    Playlist,
    PlaylistTrack,
    SweepResult,
    SyncRun,
    Track,
)

log = structlog.get_logger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS artist (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    external_id TEXT UNIQUE,
    user_saved INTEGER NOT NULL DEFAULT 0 CHECK(user_saved IN (0, 1))
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_artist_local_name
    ON artist(name) WHERE external_id IS NULL;

CREATE TABLE IF NOT EXISTS album (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    external_id TEXT UNIQUE,
    user_saved INTEGER NOT NULL DEFAULT 0 CHECK(user_saved IN (0, 1))
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_album_local_name
    ON album(name) WHERE external_id IS NULL;

CREATE TABLE IF NOT EXISTS track (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    external_id TEXT NOT NULL UNIQUE,
    album_id INTEGER NOT NULL REFERENCES album(id)
);

CREATE INDEX IF NOT EXISTS ix_track_album ON track(album_id);

CREATE TABLE IF NOT EXISTS playlist (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    external_id TEXT UNIQUE,
    is_mirror INTEGER NOT NULL DEFAULT 0 CHECK(is_mirror IN (0, 1))
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_playlist_mirror
    ON playlist(is_mirror) WHERE is_mirror = 1;

CREATE TABLE IF NOT EXISTS artist_track (
    artist_id INTEGER NOT NULL REFERENCES artist(id),
    track_id INTEGER NOT NULL REFERENCES track(id),
    UNIQUE(artist_id, track_id)
);

CREATE INDEX IF NOT EXISTS ix_artist_track_track ON artist_track(track_id);

CREATE TABLE IF NOT EXISTS playlist_track (
    playlist_id INTEGER NOT NULL REFERENCES playlist(id),
    track_id INTEGER NOT NULL REFERENCES track(id),
    position INTEGER NOT NULL,
    UNIQUE(playlist_id, track_id)
);

CREATE INDEX IF NOT EXISTS ix_playlist_track_track ON playlist_track(track_id);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL CHECK(status IN (
        'running', 'completed', 'failed', 'cancelled'
    )),
    mirror_enabled INTEGER NOT NULL DEFAULT 1,
    stats_json TEXT,
    error_message TEXT
);
"""

_ENTITIES: dict[str, tuple[type[BaseModel], frozenset[str]]] = {
    "artist": (Artist, frozenset({"name", "external_id", "user_saved"})),
    "album": (Album, frozenset({"name", "external_id", "user_saved"})),
    "track": (Track, frozenset({"name", "external_id", "album_id"})),
    "playlist": (Playlist, frozenset({"title", "external_id", "is_mirror"})),
}

_ASSOCIATIONS: dict[str, tuple[str, str, frozenset[str]]] = {
    "artist_track": ("artist_id", "track_id", frozenset()),
    "playlist_track": ("playlist_id", "track_id", frozenset({"position"})),
}

# A track stays alive while a regular playlist holds it or its album is saved.
# Mirror membership alone never keeps a track.
_ORPHAN_TRACKS = """
    SELECT t.id FROM track t
    JOIN album a ON a.id = t.album_id
    WHERE a.user_saved = 0
      AND NOT EXISTS (
          SELECT 1 FROM playlist_track pt
          JOIN playlist p ON p.id = pt.playlist_id
          WHERE pt.track_id = t.id AND p.is_mirror = 0
      )
"""


class PersistenceError(Exception):
    """Raised for storage failures that are not a resolvable uniqueness conflict."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _entity(kind: str) -> tuple[type[BaseModel], frozenset[str]]:
    try:
        return _ENTITIES[kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind!r}") from None


def _association(kind: str) -> tuple[str, str, frozenset[str]]:
    try:
        return _ASSOCIATIONS[kind]
    except KeyError:
        raise ValueError(f"Unknown association kind: {kind!r}") from None


def _check_columns(kind: str, allowed: frozenset[str], columns: Iterable[str]) -> None:
    unknown = set(columns) - allowed
    if unknown:
        raise ValueError(f"Unknown {kind} column(s): {', '.join(sorted(unknown))}")


def _where(key: Mapping[str, Any]) -> tuple[str, tuple[Any, ...]]:
    """Build a null-safe equality clause for a natural key."""
    if not key:
        raise ValueError("Natural key must not be empty")
    clause = " AND ".join(f"{col} IS ?" for col in key)
    return clause, tuple(key.values())


class Transaction:
    """Handle for one open store transaction; invalid once the block exits."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn
        self.active = True

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self.active:
            msg = "Transaction is no longer active."
            raise RuntimeError(msg)
        return self._conn


class Database:
    """Async SQLite entity store for ytmb.

    The connection runs in autocommit mode; every write goes through an
    explicit :meth:`transaction` block and takes its :class:`Transaction`
    handle as the first argument.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- transactions ---------------------------------------------------------

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run a block atomically: commit on success, roll back on any exception."""
        async with self._tx_lock:
            conn = self.conn
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise PersistenceError(f"Could not begin transaction: {exc}") from exc
            tx = Transaction(conn)
            try:
                yield tx
            except BaseException:
                tx.active = False
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise
            tx.active = False
            try:
                await conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise PersistenceError(f"Commit failed: {exc}") from exc

    def _reader(self, tx: Transaction | None) -> aiosqlite.Connection:
        return tx.conn if tx is not None else self.conn

    @staticmethod
    async def _execute(
        conn: aiosqlite.Connection,
        sql: str,
        params: Iterable[Any] = (),
    ) -> aiosqlite.Cursor:
        try:
            return await conn.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    # -- entities -------------------------------------------------------------

    async def get_or_create(
        self,
        tx: Transaction,
        kind: EntityKind,
        natural_key: Mapping[str, Any],
        attributes: Mapping[str, Any] | None = None,
    ) -> tuple[Any, bool]:
        """Return the row identified by *natural_key*, inserting it if absent.

        *attributes* only apply when the row is created.  A uniqueness
        violation on insert means another writer got there first; the row is
        looked up again instead of failing.
        """
        model, columns = _entity(kind)
        attributes = dict(attributes or {})
        _check_columns(kind, columns, [*natural_key, *attributes])

        found = await self._find_row(tx.conn, kind, natural_key)
        if found is not None:
            return model.model_validate(dict(found)), False

        values = {**attributes, **natural_key}
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        try:
            cur = await tx.conn.execute(
                f"INSERT INTO {kind} ({cols}) VALUES ({marks}) RETURNING *",
                tuple(values.values()),
            )
            row = await cur.fetchone()
        except sqlite3.IntegrityError as exc:
            found = await self._find_row(tx.conn, kind, natural_key)
            if found is None:
                raise PersistenceError(f"Could not insert {kind}: {exc}") from exc
            log.debug("get_or_create_conflict", kind=kind, key=dict(natural_key))
            return model.model_validate(dict(found)), False
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not insert {kind}: {exc}") from exc
        return model.model_validate(dict(row)), True

    async def update(
        self,
        tx: Transaction,
        kind: EntityKind,
        row_id: int,
        changes: Mapping[str, Any],
    ) -> Any:
        """Overwrite *changes* on an existing row and return the new row."""
        model, columns = _entity(kind)
        _check_columns(kind, columns, changes)
        if not changes:
            return await self.get(kind, row_id, tx=tx)
        assignments = ", ".join(f"{col} = ?" for col in changes)
        cur = await self._execute(
            tx.conn,
            f"UPDATE {kind} SET {assignments} WHERE id = ? RETURNING *",
            (*changes.values(), row_id),
        )
        row = await cur.fetchone()
        if row is None:
            raise PersistenceError(f"No {kind} with id {row_id}")
        return model.model_validate(dict(row))

    async def get(self, kind: EntityKind, row_id: int, *, tx: Transaction | None = None) -> Any:
        model, _ = _entity(kind)
        cur = await self._execute(
            self._reader(tx), f"SELECT * FROM {kind} WHERE id = ?", (row_id,)
        )
        row = await cur.fetchone()
        return model.model_validate(dict(row)) if row else None

    async def find(
        self,
        kind: EntityKind,
        natural_key: Mapping[str, Any],
        *,
        tx: Transaction | None = None,
    ) -> Any:
        model, columns = _entity(kind)
        _check_columns(kind, columns, natural_key)
        row = await self._find_row(self._reader(tx), kind, natural_key)
        return model.model_validate(dict(row)) if row else None

    async def list_entities(
        self,
        kind: EntityKind,
        *,
        tx: Transaction | None = None,
    ) -> list[Any]:
        model, _ = _entity(kind)
        cur = await self._execute(self._reader(tx), f"SELECT * FROM {kind} ORDER BY id")
        rows = await cur.fetchall()
        return [model.model_validate(dict(r)) for r in rows]

    async def count(self, table: EntityKind | AssociationKind) -> int:
        if table not in _ENTITIES and table not in _ASSOCIATIONS:
            raise ValueError(f"Unknown table: {table!r}")
        cur = await self._execute(self.conn, f"SELECT COUNT(*) FROM {table}")
        row = await cur.fetchone()
        return row[0]

    async def _find_row(
        self,
        conn: aiosqlite.Connection,
        kind: str,
        natural_key: Mapping[str, Any],
    ) -> aiosqlite.Row | None:
        clause, params = _where(natural_key)
        cur = await self._execute(conn, f"SELECT * FROM {kind} WHERE {clause}", params)
        return await cur.fetchone()

    # -- associations ---------------------------------------------------------

    async def link(
        self,
        tx: Transaction,
        association: AssociationKind,
        key_a: int,
        key_b: int,
        extra_attrs: Mapping[str, Any] | None = None,
    ) -> bool:
        """Insert the pair unless it already exists. Returns True if created."""
        col_a, col_b, extra_cols = _association(association)
        extra = dict(extra_attrs or {})
        _check_columns(association, extra_cols, extra)
        cols = [col_a, col_b, *extra]
        cur = await self._execute(
            tx.conn,
            f"""
            INSERT INTO {association} ({", ".join(cols)})
            VALUES ({", ".join("?" for _ in cols)})
            ON CONFLICT ({col_a}, {col_b}) DO NOTHING
            """,
            (key_a, key_b, *extra.values()),
        )
        return cur.rowcount == 1

    async def unlink_missing(
        self,
        tx: Transaction,
        association: AssociationKind,
        *,
        owner: str,
        owner_id: int,
        keep: Iterable[int] = (),
    ) -> int:
        """Remove every pair of *owner_id* whose other side is not in *keep*.

        *owner* names the owning column, e.g. ``playlist_id`` to prune a
        playlist's members or ``track_id`` to prune a track's artists.
        """
        col_a, col_b, _ = _association(association)
        if owner not in (col_a, col_b):
            raise ValueError(f"{association} has no column {owner!r}")
        other = col_b if owner == col_a else col_a
        cur = await self._execute(
            tx.conn,
            f"SELECT {other} FROM {association} WHERE {owner} = ?",
            (owner_id,),
        )
        stale = {row[0] for row in await cur.fetchall()} - set(keep)
        for other_id in sorted(stale):
            await self._execute(
                tx.conn,
                f"DELETE FROM {association} WHERE {owner} = ? AND {other} = ?",
                (owner_id, other_id),
            )
        return len(stale)

    async def set_position(
        self,
        tx: Transaction,
        playlist_id: int,
        track_id: int,
        position: int,
    ) -> bool:
        """Overwrite a membership's position. Returns True if it changed."""
        cur = await self._execute(
            tx.conn,
            """
            UPDATE playlist_track SET position = ?
            WHERE playlist_id = ? AND track_id = ? AND position IS NOT ?
            """,
            (position, playlist_id, track_id, position),
        )
        return cur.rowcount == 1

    async def get_playlist_positions(
        self,
        playlist_id: int,
        *,
        tx: Transaction | None = None,
    ) -> dict[int, int]:
        """Map track id → position for one playlist."""
        cur = await self._execute(
            self._reader(tx),
            "SELECT track_id, position FROM playlist_track WHERE playlist_id = ?",
            (playlist_id,),
        )
        return {row["track_id"]: row["position"] for row in await cur.fetchall()}

    async def list_playlist_tracks(
        self,
        playlist_id: int,
        *,
        tx: Transaction | None = None,
    ) -> list[PlaylistTrack]:
        cur = await self._execute(
            self._reader(tx),
            "SELECT * FROM playlist_track WHERE playlist_id = ? ORDER BY position, track_id",
            (playlist_id,),
        )
        return [PlaylistTrack.model_validate(dict(r)) for r in await cur.fetchall()]

    async def list_artist_ids_for_track(
        self,
        track_id: int,
        *,
        tx: Transaction | None = None,
    ) -> set[int]:
        cur = await self._execute(
            self._reader(tx),
            "SELECT artist_id FROM artist_track WHERE track_id = ?",
            (track_id,),
        )
        return {row[0] for row in await cur.fetchall()}

    async def get_mirror_playlist(self, *, tx: Transaction | None = None) -> Playlist | None:
        cur = await self._execute(
            self._reader(tx), "SELECT * FROM playlist WHERE is_mirror = 1"
        )
        row = await cur.fetchone()
        return Playlist.model_validate(dict(row)) if row else None

    async def list_tracks_missing_from(
        self,
        playlist_id: int,
        *,
        tx: Transaction | None = None,
    ) -> list[Track]:
        """Every stored track not yet linked to *playlist_id*, oldest first."""
        cur = await self._execute(
            self._reader(tx),
            """
            SELECT t.* FROM track t
            WHERE NOT EXISTS (
                SELECT 1 FROM playlist_track pt
                WHERE pt.playlist_id = ? AND pt.track_id = t.id
            )
            ORDER BY t.id
            """,
            (playlist_id,),
        )
        return [Track.model_validate(dict(r)) for r in await cur.fetchall()]

    async def next_position(self, playlist_id: int, *, tx: Transaction | None = None) -> int:
        cur = await self._execute(
            self._reader(tx),
            "SELECT COALESCE(MAX(position) + 1, 0) FROM playlist_track WHERE playlist_id = ?",
            (playlist_id,),
        )
        row = await cur.fetchone()
        return row[0]

    # -- orphan sweep ---------------------------------------------------------

    async def delete_unreferenced(self, tx: Transaction) -> SweepResult:
        """Delete every entity no remaining association keeps alive.

        Regular playlists go when they have no members, tracks when no regular
        playlist holds them and their album is not saved, then albums and
        artists that are unsaved and unreferenced.  The mirror playlist is
        never deleted; a swept track's mirror membership goes with it.
        """
        result = SweepResult()

        cur = await self._execute(
            tx.conn,
            """
            DELETE FROM playlist
            WHERE is_mirror = 0
              AND NOT EXISTS (SELECT 1 FROM playlist_track pt WHERE pt.playlist_id = playlist.id)
            """,
        )
        result.playlists = cur.rowcount

        cur = await self._execute(
            tx.conn, f"DELETE FROM artist_track WHERE track_id IN ({_ORPHAN_TRACKS})"
        )
        result.links += cur.rowcount
        cur = await self._execute(
            tx.conn, f"DELETE FROM playlist_track WHERE track_id IN ({_ORPHAN_TRACKS})"
        )
        result.links += cur.rowcount
        cur = await self._execute(tx.conn, f"DELETE FROM track WHERE id IN ({_ORPHAN_TRACKS})")
        result.tracks = cur.rowcount

        cur = await self._execute(
            tx.conn,
            """
            DELETE FROM album
            WHERE user_saved = 0
              AND NOT EXISTS (SELECT 1 FROM track t WHERE t.album_id = album.id)
            """,
        )
        result.albums = cur.rowcount

        cur = await self._execute(
            tx.conn,
            """
            DELETE FROM artist
            WHERE user_saved = 0
              AND NOT EXISTS (SELECT 1 FROM artist_track at WHERE at.artist_id = artist.id)
            """,
        )
        result.artists = cur.rowcount

        if result.entities or result.links:
            log.info("orphans_deleted", **result.model_dump())
        return result

    # -- sync_runs ------------------------------------------------------------

    async def start_sync_run(self, *, mirror_enabled: bool = True) -> SyncRun:
        async with self.transaction() as tx:
            cur = await self._execute(
                tx.conn,
                """
                INSERT INTO sync_runs (started_at, status, mirror_enabled)
                VALUES (?, 'running', ?)
                RETURNING *
                """,
                (_now_iso(), int(mirror_enabled)),
            )
            row = await cur.fetchone()
        return self._row_to_sync_run(row)

    async def finish_sync_run(
        self,
        run_id: int,
        *,
        status: str,
        stats_json: str | None = None,
        error_message: str | None = None,
    ) -> SyncRun:
        async with self.transaction() as tx:
            cur = await self._execute(
                tx.conn,
                """
                UPDATE sync_runs SET finished_at = ?, status = ?, stats_json = ?, error_message = ?
                WHERE id = ?
                RETURNING *
                """,
                (_now_iso(), status, stats_json, error_message, run_id),
            )
            row = await cur.fetchone()
        return self._row_to_sync_run(row)

    async def list_sync_runs(self, *, limit: int = 20) -> list[SyncRun]:
        cur = await self._execute(
            self.conn, "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
        )
        rows = await cur.fetchall()
        return [self._row_to_sync_run(r) for r in rows]

    async def get_last_sync_run(self, *, status: str | None = None) -> SyncRun | None:
        if status:
            cur = await self._execute(
                self.conn,
                "SELECT * FROM sync_runs WHERE status = ? ORDER BY id DESC LIMIT 1",
                (status,),
            )
        else:
            cur = await self._execute(self.conn, "SELECT * FROM sync_runs ORDER BY id DESC LIMIT 1")
        row = await cur.fetchone()
        return self._row_to_sync_run(row) if row else None

    @staticmethod
    def _row_to_sync_run(row: aiosqlite.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            status=row["status"],
            mirror_enabled=bool(row["mirror_enabled"]),
            stats_json=row["stats_json"],
            error_message=row["error_message"],
        )
