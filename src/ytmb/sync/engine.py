"""Sync orchestrator: fetch a remote snapshot, reconcile, then update the mirror."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from ytmb.storage.database import PersistenceError
from ytmb.storage.models import MIRROR_PLAYLIST_TITLE
from ytmb.sync.mirror import MirrorPlaylistBuilder, MirrorReport
from ytmb.sync.reconciler import Reconciler, SyncReport
from ytmb.sync.remote import RemoteSnapshot, RetryPolicy, retry_remote

if TYPE_CHECKING:
    from ytmb.config import AppConfig
    from ytmb.storage.database import Database
    from ytmb.sync.remote import RemoteCatalog

log = structlog.get_logger(__name__)

T = TypeVar("T")


class RunState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    MIRROR_UPDATING = "mirror_updating"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncOutcome:
    """What a finished run hands back to its caller."""

    state: RunState
    sync_report: SyncReport = field(default_factory=SyncReport)
    mirror_report: MirrorReport | None = None
    mirror_error: str | None = None
    # Set when the run aborted; names the state it failed in.
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "sync": self.sync_report.to_dict(),
            "mirror": self.mirror_report.to_dict() if self.mirror_report else None,
            "mirror_error": self.mirror_error,
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class SyncEngine:
    """Runs one sync at a time against a store and a remote catalog."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        catalog: RemoteCatalog,
    ) -> None:
        self._config = config
        self._db = db
        self._catalog = catalog
        self._retry = RetryPolicy(
            attempts=config.sync.max_retries,
            base_delay=config.sync.retry_backoff_seconds,
        )
        self._state = RunState.IDLE
        self._lock = asyncio.Lock()
        self._cancel = asyncio.Event()
        self._last_outcome: SyncOutcome | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def last_outcome(self) -> SyncOutcome | None:
        return self._last_outcome

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "last_outcome": self._last_outcome.to_json() if self._last_outcome else None,
        }

    def cancel(self) -> None:
        """Ask the running sync to stop after its current unit of work."""
        if self._lock.locked():
            log.info("sync_cancel_requested", state=self._state.value)
            self._cancel.set()

    async def run_sync(self) -> SyncOutcome:
        """Run a full sync cycle. Raises if already syncing or if the run fails."""
        if self._lock.locked():
            raise RuntimeError("Sync already in progress")

        async with self._lock:
            self._cancel.clear()
            run = await self._db.start_sync_run(mirror_enabled=self._config.sync.handle_mirror)
            try:
                with structlog.contextvars.bound_contextvars(run_id=run.id):
                    outcome = await self._do_sync()
            except asyncio.CancelledError:
                self._state = RunState.CANCELLED
                self._last_outcome = SyncOutcome(
                    RunState.CANCELLED, SyncReport(cancelled=True), error="task cancelled"
                )
                await self._db.finish_sync_run(run.id, status="cancelled", error_message="task cancelled")
                log.warning("sync_task_cancelled")
                raise
            except Exception as exc:
                failed_in = self._state
                self._state = RunState.FAILED
                message = f"{failed_in.value}: {exc}"
                self._last_outcome = SyncOutcome(RunState.FAILED, error=message)
                await self._db.finish_sync_run(run.id, status="failed", error_message=message)
                log.error("sync_failed", state=failed_in.value, error=str(exc))
                raise

            status = "cancelled" if outcome.state is RunState.CANCELLED else "completed"
            await self._db.finish_sync_run(run.id, status=status, stats_json=outcome.to_json())
            self._last_outcome = outcome
            return outcome

    async def _do_sync(self) -> SyncOutcome:
        self._state = RunState.FETCHING
        log.info("sync_start", mirror=self._config.sync.handle_mirror)
        snapshot = await self._fetch_snapshot()
        if self._cancel.is_set():
            return self._finish(SyncOutcome(RunState.CANCELLED, SyncReport(cancelled=True)))

        self._state = RunState.RECONCILING
        report = await Reconciler(self._db).reconcile(snapshot, should_stop=self._cancel.is_set)
        outcome = SyncOutcome(RunState.DONE, report)
        if report.cancelled:
            outcome.state = RunState.CANCELLED
            return self._finish(outcome)

        if self._config.sync.handle_mirror:
            self._state = RunState.MIRROR_UPDATING
            builder = MirrorPlaylistBuilder(
                self._db,
                self._catalog,
                retry=self._retry,
                batch_size=self._config.sync.mirror_batch_size,
            )
            try:
                outcome.mirror_report = await builder.ensure_mirror(
                    known_playlists=snapshot.playlists,
                    should_stop=self._cancel.is_set,
                )
            except PersistenceError:
                raise
            except Exception as exc:
                outcome.mirror_error = str(exc)
                log.error("mirror_failed", error=str(exc))
            else:
                if outcome.mirror_report.cancelled:
                    outcome.state = RunState.CANCELLED

        return self._finish(outcome)

    def _finish(self, outcome: SyncOutcome) -> SyncOutcome:
        self._state = outcome.state
        log.info("sync_finished", **outcome.to_dict())
        return outcome

    async def _fetch_snapshot(self) -> RemoteSnapshot:
        """Fetch the whole remote library; any failure aborts the run."""
        semaphore = asyncio.Semaphore(self._config.sync.fetch_concurrency)

        async def fetch(operation: str, call: Callable[[], Awaitable[T]]) -> T:
            async with semaphore:
                return await retry_remote(call, self._retry, operation=operation)

        headers, album_headers, artists = await _gather_or_raise(
            fetch("fetch_playlists", self._catalog.fetch_playlists),
            fetch("fetch_albums", self._catalog.fetch_albums),
            fetch("fetch_artists", self._catalog.fetch_artists),
        )

        # The mirror's contents are read by the mirror builder itself.
        wanted = [h for h in headers if h.remote_id and h.title != MIRROR_PLAYLIST_TITLE]
        saved = [a for a in album_headers if a.album.external_id]
        track_lists = await _gather_or_raise(
            *(
                fetch(
                    "fetch_playlist_tracks",
                    lambda h=h: self._catalog.fetch_playlist_tracks(h.remote_id),
                )
                for h in wanted
            ),
            *(
                fetch(
                    "fetch_album_tracks",
                    lambda a=a: self._catalog.fetch_album_tracks(a.album.external_id),
                )
                for a in saved
            ),
        )
        playlist_tracks = {h.remote_id: tuple(t) for h, t in zip(wanted, track_lists)}
        album_tracks = {a.album.external_id: tuple(t) for a, t in zip(saved, track_lists[len(wanted) :])}
        playlists = [
            replace(h, tracks=playlist_tracks[h.remote_id]) if h.remote_id in playlist_tracks else h
            for h in headers
        ]
        albums = [
            replace(a, tracks=album_tracks[a.album.external_id]) if a.album.external_id in album_tracks else a
            for a in album_headers
        ]

        log.info(
            "fetch_done",
            playlists=len(playlists),
            albums=len(albums),
            artists=len(artists),
            tracks=sum(len(t) for t in track_lists),
        )
        return RemoteSnapshot(playlists=playlists, albums=albums, artists=list(artists))


async def _gather_or_raise(*aws: Awaitable[Any]) -> list[Any]:
    """Await all, then raise the first failure so no fetch is left unobserved."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
