"""Sync engine: orchestrator, reconciler and mirror playlist builder."""

from ytmb.sync.engine import RunState, SyncEngine, SyncOutcome
from ytmb.sync.mirror import MirrorPlaylistBuilder, MirrorReport
from ytmb.sync.reconciler import Reconciler, SyncReport

__all__ = [
    "MirrorPlaylistBuilder",
    "MirrorReport",
    "Reconciler",
    "RunState",
    "SyncEngine",
    "SyncOutcome",
    "SyncReport",
]
