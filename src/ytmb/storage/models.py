"""Pydantic models for the ytmb storage layer."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

EntityKind = Literal["artist", "album", "track", "playlist"]
AssociationKind = Literal["artist_track", "playlist_track"]
SyncStatus = Literal["running", "completed", "failed", "cancelled"]

MIRROR_PLAYLIST_TITLE = "ytmb-all"
UNKNOWN_ALBUM_NAME = "Unknown Album"


class Artist(BaseModel):
    id: int | None = None
    name: str
    external_id: str | None = None
    user_saved: bool = False


class Album(BaseModel):
    id: int | None = None
    name: str
    external_id: str | None = None
    user_saved: bool = False


class Track(BaseModel):
    """A track; ``external_id`` is its only identity across runs."""

    id: int | None = None
    name: str
    external_id: str
    album_id: int


class Playlist(BaseModel):
    id: int | None = None
    title: str
    external_id: str | None = None
    is_mirror: bool = False


class PlaylistTrack(BaseModel):
    playlist_id: int
    track_id: int
    position: int


class SweepResult(BaseModel):
    """Row counts removed by one orphan sweep."""

    playlists: int = 0
    tracks: int = 0
    albums: int = 0
    artists: int = 0
    links: int = 0

    @property
    def entities(self) -> int:
        return self.playlists + self.tracks + self.albums + self.artists


class SyncRun(BaseModel):
    """Record of a single synchronisation run."""

    id: int | None = None
    started_at: datetime
    finished_at: datetime | None = None
    status: SyncStatus
    mirror_enabled: bool = True
    stats_json: str | None = None
    error_message: str | None = None
