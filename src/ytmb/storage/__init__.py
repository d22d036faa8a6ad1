"""ytmb storage layer: async SQLite mirror of the remote library."""

from ytmb.storage.database import Database, PersistenceError, Transaction
from ytmb.storage.models import (
    MIRROR_PLAYLIST_TITLE,
    Album,
    Artist,
    Playlist,
    PlaylistTrack,
    SweepResult,
    SyncRun,
    Track,
)

__all__ = [
    "MIRROR_PLAYLIST_TITLE",
    "Album",
    "Artist",
    "Database",
    "PersistenceError",
    "Playlist",
    "PlaylistTrack",
    "SweepResult",
    "SyncRun",
    "Track",
    "Transaction",
]
