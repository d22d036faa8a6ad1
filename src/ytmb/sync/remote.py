"""Remote catalog interface, snapshot records, and the remote retry policy.

The remote catalog is the source of truth.  Everything the sync engine
knows about it arrives as the frozen records below; fields are optional so
that incomplete remote data can be represented and rejected downstream.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


class RemoteCatalogError(Exception):
    """Raised when a remote catalog call fails."""


class TransientRemoteError(RemoteCatalogError):
    """A remote failure worth retrying (rate limiting, server or network errors)."""


class RemoteTimeoutError(TransientRemoteError):
    """A remote call did not finish within its timeout."""


@dataclass(frozen=True)
class ArtistRecord:
    """An artist as referenced by the remote catalog."""

    name: str | None
    external_id: str | None = None


@dataclass(frozen=True)
class AlbumRecord:
    name: str | None
    external_id: str | None = None


@dataclass(frozen=True)
class TrackRecord:
    """A track entry; ``external_id`` is the remote's stable track id."""

    external_id: str | None
    name: str | None
    album: AlbumRecord | None = None
    artists: tuple[ArtistRecord, ...] = ()


@dataclass(frozen=True)
class PlaylistSnapshot:
    """A remote playlist header, optionally with its ordered tracks."""

    remote_id: str | None
    title: str | None
    tracks: tuple[TrackRecord, ...] = ()


@dataclass(frozen=True)
class AlbumSnapshot:
    """A library album with its tracks."""

    album: AlbumRecord
    tracks: tuple[TrackRecord, ...] = ()


@dataclass
class RemoteSnapshot:
    """Everything fetched from the remote catalog for one sync run."""

    playlists: list[PlaylistSnapshot] = field(default_factory=list)
    albums: list[AlbumSnapshot] = field(default_factory=list)
    artists: list[ArtistRecord] = field(default_factory=list)


class RemoteCatalog(Protocol):
    """Read and write operations the sync engine needs from the remote catalog.

    Implementations enforce their own timeouts and raise
    :class:`RemoteCatalogError` (or a subclass) on failure.
    """

    async def fetch_playlists(self) -> list[PlaylistSnapshot]: ...

    async def fetch_playlist_tracks(self, remote_id: str) -> list[TrackRecord]: ...

    async def fetch_albums(self) -> list[AlbumSnapshot]: ...

    async def fetch_album_tracks(self, album_id: str) -> list[TrackRecord]: ...

    async def fetch_artists(self) -> list[ArtistRecord]: ...

    async def create_playlist(self, title: str) -> str: ...

    async def add_tracks_to_playlist(self, remote_id: str, track_ids: list[str]) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient remote failures."""

    attempts: int = 3
    base_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * 2**attempt


async def retry_remote(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation: str,
) -> T:
    """Await ``call()``, retrying :class:`TransientRemoteError` up to ``policy.attempts`` times.

    Any other exception propagates immediately.  After the last attempt the
    transient error itself is re-raised.
    """
    attempts = max(policy.attempts, 1)
    for attempt in range(attempts - 1):
        try:
            return await call()
        except TransientRemoteError as exc:
            wait = policy.delay_for(attempt)
            log.warning(
                "remote_transient_error",
                operation=operation,
                error=str(exc),
                retry_in=wait,
                attempt=attempt,
            )
            await asyncio.sleep(wait)

    try:
        return await call()
    except TransientRemoteError as exc:
        log.warning("remote_retries_exhausted", operation=operation, attempts=attempts, error=str(exc))
        raise
