"""Remote catalog backed by YouTube Music through ytmusicapi.

ytmusicapi is synchronous; every call runs in ``asyncio.to_thread()`` under
a per-call timeout so the event loop never blocks on the network.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import requests
import structlog
from ytmusicapi import YTMusic
from ytmusicapi.exceptions import YTMusicServerError

from ytmb.config import YTMusicConfig
from ytmb.sync.remote import (
    AlbumRecord,
    AlbumSnapshot,
    ArtistRecord,
    PlaylistSnapshot,
    RemoteCatalogError,
    RemoteTimeoutError,
    TrackRecord,
    TransientRemoteError,
)

log = structlog.get_logger(__name__)

_MIRROR_DESCRIPTION = "Every track in the ytmb library mirror."
_TRANSIENT = (YTMusicServerError, requests.ConnectionError, requests.Timeout)


def _artists(items: list[dict] | None) -> tuple[ArtistRecord, ...]:
    return tuple(
        ArtistRecord(name=item.get("name"), external_id=item.get("id")) for item in items or []
    )


def _album(item: dict | str | None) -> AlbumRecord | None:
    if not item:
        return None
    if isinstance(item, str):
        return AlbumRecord(name=item)
    return AlbumRecord(name=item.get("name"), external_id=item.get("id"))


def _track(item: dict, album: AlbumRecord | None = None) -> TrackRecord:
    return TrackRecord(
        external_id=item.get("videoId"),
        name=item.get("title"),
        album=album or _album(item.get("album")),
        artists=_artists(item.get("artists")),
    )


class YTMusicCatalog:
    """Async :class:`~ytmb.sync.remote.RemoteCatalog` over a ytmusicapi client."""

    def __init__(self, config: YTMusicConfig, *, client: Any | None = None) -> None:
        self._config = config
        self._client = client

    async def __aenter__(self) -> YTMusicCatalog:
        if self._client is None:
            auth = str(Path(self._config.auth_file).expanduser()) if self._config.auth_file else None
            self._client = await self._call("connect", YTMusic, auth)
        return self

    async def __aexit__(self, *exc: object) -> None:
        self._client = None

    @property
    def client(self) -> Any:
        if self._client is None:
            msg = "YTMusicCatalog not opened. Use 'async with'."
            raise RuntimeError(msg)
        return self._client

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        timeout = self._config.request_timeout_seconds
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)
        except TimeoutError as exc:
            raise RemoteTimeoutError(f"{operation} timed out after {timeout}s") from exc
        except _TRANSIENT as exc:
            raise TransientRemoteError(f"{operation} failed: {exc}") from exc
        except Exception as exc:
            raise RemoteCatalogError(f"{operation} failed: {exc}") from exc

    # -- reads ----------------------------------------------------------------

    async def fetch_playlists(self) -> list[PlaylistSnapshot]:
        items = await self._call("get_library_playlists", self.client.get_library_playlists, limit=None)
        return [
            PlaylistSnapshot(remote_id=item.get("playlistId"), title=item.get("title"))
            for item in items or []
        ]

    async def fetch_playlist_tracks(self, remote_id: str) -> list[TrackRecord]:
        playlist = await self._call("get_playlist", self.client.get_playlist, remote_id, limit=None)
        return [_track(item) for item in (playlist or {}).get("tracks") or []]

    async def fetch_albums(self) -> list[AlbumSnapshot]:
        """Library album headers; tracks come from :meth:`fetch_album_tracks`."""
        items = await self._call("get_library_albums", self.client.get_library_albums, limit=None)
        return [
            AlbumSnapshot(album=AlbumRecord(name=item.get("title"), external_id=item.get("browseId")))
            for item in items or []
        ]

    async def fetch_album_tracks(self, album_id: str) -> list[TrackRecord]:
        detail = await self._call("get_album", self.client.get_album, album_id) or {}
        parent = AlbumRecord(name=detail.get("title"), external_id=album_id)
        return [_track(item, parent) for item in detail.get("tracks") or []]

    async def fetch_artists(self) -> list[ArtistRecord]:
        items = await self._call(
            "get_library_subscriptions", self.client.get_library_subscriptions, limit=None
        )
        return [
            ArtistRecord(name=item.get("artist"), external_id=item.get("browseId"))
            for item in items or []
        ]

    # -- writes ---------------------------------------------------------------

    async def create_playlist(self, title: str) -> str:
        result = await self._call("create_playlist", self.client.create_playlist, title, _MIRROR_DESCRIPTION)
        if not isinstance(result, str):
            raise RemoteCatalogError(f"create_playlist returned no playlist id: {result!r}")
        log.info("ytmusic_playlist_created", title=title, remote_id=result)
        return result

    async def add_tracks_to_playlist(self, remote_id: str, track_ids: list[str]) -> None:
        if not track_ids:
            return
        result = await self._call(
            "add_playlist_items",
            self.client.add_playlist_items,
            remote_id,
            track_ids,
            duplicates=False,
        )
        if isinstance(result, dict) and result.get("status") != "STATUS_SUCCEEDED":
            raise RemoteCatalogError(f"add_playlist_items failed: {result.get('status')!r}")
