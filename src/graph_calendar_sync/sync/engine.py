"""
SyncEngine — single-run state machine mirroring a remote calendar into the local store.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from datetime import timezone
from datetime import tzinfo

from graph_calendar_sync.event_types import EventTypeStore
from graph_calendar_sync.models import AlreadyRunningError
from graph_calendar_sync.models import CalendarSyncError
from graph_calendar_sync.models import ContinuationToken
from graph_calendar_sync.models import EngineState
from graph_calendar_sync.models import OfflineError
from graph_calendar_sync.models import RemoteSourceError
from graph_calendar_sync.models import ResultStats
from graph_calendar_sync.models import SyncCancelledError
from graph_calendar_sync.models import SyncConfig
from graph_calendar_sync.models import SyncMode
from graph_calendar_sync.models import SyncProgress
from graph_calendar_sync.models import SyncResult
from graph_calendar_sync.models import SyncStage
from graph_calendar_sync.models import SyncStats
from graph_calendar_sync.models import SyncStatus
from graph_calendar_sync.models import TokenExpiredError
from graph_calendar_sync.remote import RemoteCalendarSource
from graph_calendar_sync.settings import SyncSettings
from graph_calendar_sync.sync.resolver import ChangeSet
from graph_calendar_sync.sync.resolver import resolve_delta
from graph_calendar_sync.sync.resolver import resolve_full
from graph_calendar_sync.sync.utils import latest_modified
from graph_calendar_sync.sync.utils import resolve_timezone
from graph_calendar_sync.sync.utils import window_bounds

ProgressCallback = Callable[[SyncProgress], None]
ResultCallback = Callable[[SyncResult], None]


class SyncEngine:
    """Main synchronization engine.

    ``event_store`` must provide ``get_synced_events()``, ``find_by_external_ids(ids)``,
    ``create_event(e)``, ``update_event(id, e)``, ``delete_event(id)`` and a
    ``transaction()`` context manager. Only one run may be active at a time.

    With ``event_types`` set, created events are classified and updated events
    are reclassified unless their type was assigned by hand.
    """

    def __init__(
        self,
        source: RemoteCalendarSource,
        event_store,
        settings: SyncSettings,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        event_types: EventTypeStore | None = None,
    ):
        self.source = source
        self.event_store = event_store
        self.settings = settings
        self.event_types = event_types
        self.tz = tz or resolve_timezone(None)
        self.logger = logging.getLogger(__name__)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._state = EngineState.IDLE
        self._cancel_requested = threading.Event()
        self._thread: threading.Thread | None = None
        self._on_progress: ProgressCallback | None = None
        self._on_result: ResultCallback | None = None
        self.last_result: SyncResult | None = None

    # ------------------------------------------------------------------ #
    # Subscriber slot                                                      #
    # ------------------------------------------------------------------ #

    def set_callbacks(
        self,
        on_progress: ProgressCallback | None = None,
        on_result: ResultCallback | None = None,
    ):
        """Register the progress/result pair, replacing any previous pair."""
        with self._lock:
            self._on_progress = on_progress
            self._on_result = on_result

    def clear_callbacks(self):
        self.set_callbacks(None, None)

    # ------------------------------------------------------------------ #
    # Public surface                                                       #
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    def is_syncing(self) -> bool:
        return self.state is EngineState.RUNNING

    def get_sync_status(self) -> SyncStatus:
        return self.settings.get_sync_status()

    def get_current_sync_config(self) -> SyncConfig:
        return self.settings.get_sync_config()

    def set_sync_config(self, config: SyncConfig):
        self.settings.set_sync_config(config)

    def start(self, force_full_sync: bool = False, online: bool = True) -> SyncMode:
        """Begin a run on a background thread and return its mode.

        Raises AlreadyRunningError or OfflineError before anything is fetched.
        """
        mode = self._begin(force_full_sync, online)
        self._thread = threading.Thread(
            target=self._execute, args=(mode,), name="calendar-sync", daemon=True
        )
        self._thread.start()
        return mode

    def run(self, force_full_sync: bool = False, online: bool = True) -> SyncResult:
        """Like start(), but runs on the calling thread and returns the result."""
        mode = self._begin(force_full_sync, online)
        return self._execute(mode)

    def wait(self, timeout: float | None = None) -> bool:
        """Join a background run. Returns False if it is still going."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def cancel(self) -> bool:
        """Ask the running sync to stop at the next page boundary.

        Returns False when no sync is running.
        """
        with self._lock:
            if self._state is not EngineState.RUNNING:
                return False
            self._cancel_requested.set()
        self.logger.info("Cancellation requested, stopping at the next page boundary...")
        return True

    # ------------------------------------------------------------------ #
    # Run lifecycle                                                        #
    # ------------------------------------------------------------------ #

    def _begin(self, force_full_sync: bool, online: bool) -> SyncMode:
        with self._lock:
            if self._state is EngineState.RUNNING:
                raise AlreadyRunningError("Sync already in progress")
            if not online:
                raise OfflineError(
                    "Unable to sync while offline. Please check your internet connection."
                )
            status = self.settings.get_sync_status()
            if not force_full_sync and status.continuation_token:
                mode = SyncMode.DIFFERENTIAL
            else:
                mode = SyncMode.FULL
            self._cancel_requested.clear()
            self._state = EngineState.RUNNING

        self.logger.info(f"Starting {mode.value} sync with {self.source!r}")
        if mode is SyncMode.FULL:
            message = "Fetching events for the sync window..."
        else:
            message = "Checking for changes since last sync..."
        self._emit(SyncStage.FETCHING, message, SyncStats())
        return mode

    def _execute(self, mode: SyncMode) -> SyncResult:
        stats = SyncStats()
        try:
            if mode is SyncMode.FULL:
                message = self._full_sync(stats)
            else:
                message = self._differential_sync(stats)
            result = SyncResult(True, message, mode, _result_stats(stats))
        except SyncCancelledError:
            self.logger.warning("Sync cancelled; changes already saved are kept")
            result = SyncResult(
                False,
                "Sync was cancelled",
                mode,
                _result_stats(stats),
                outcome=EngineState.CANCELLED,
            )
        except TokenExpiredError as e:
            self.logger.error(f"Sync token rejected: {e}")
            result = SyncResult(
                False,
                "Sync token expired. Run a full sync to start over.",
                mode,
                _result_stats(stats),
                errors=[str(e) or "Sync token expired"],
                outcome=EngineState.FAILED,
            )
        except CalendarSyncError as e:
            self.logger.error(f"Sync failed: {e}")
            result = SyncResult(
                False,
                "Sync failed. Please try again.",
                mode,
                _result_stats(stats),
                errors=[str(e)],
                outcome=EngineState.FAILED,
            )
        except Exception as e:
            self.logger.error(f"Unexpected error: {e}", exc_info=True)
            result = SyncResult(
                False,
                "Sync failed. Please try again.",
                mode,
                _result_stats(stats),
                errors=[str(e) or e.__class__.__name__],
                outcome=EngineState.FAILED,
            )

        self._finish(result)
        return result

    def _finish(self, result: SyncResult):
        with self._lock:
            self._state = result.outcome
            self.last_result = result
            on_result = self._on_result
        self._notify(on_result, result)
        with self._lock:
            # A result callback may already have started the next run.
            if self._state is result.outcome:
                self._state = EngineState.IDLE

    # ------------------------------------------------------------------ #
    # Full sync                                                            #
    # ------------------------------------------------------------------ #

    def _full_sync(self, stats: SyncStats) -> str:
        config = self.settings.get_sync_config()
        start, end = window_bounds(config, self.tz)
        self.logger.info(f"Fetching remote events {config.start_date} .. {config.end_date}...")

        remote_events = []
        for page in self.source.fetch_events_in_range(start, end):
            self._checkpoint()
            remote_events.extend(page)
            stats.fetched += len(page)
            self._emit(
                SyncStage.FETCHING,
                f"Fetching events... ({stats.fetched} so far)",
                stats,
                completed=stats.fetched,
            )

        token = self._baseline_token(start, end)
        self._checkpoint()

        self.logger.info("Loading previously synced events...")
        local_events = self.event_store.get_synced_events()

        self._emit(
            SyncStage.PROCESSING,
            f"Processing {len(remote_events)} events...",
            stats,
            total=len(remote_events),
        )
        changes = resolve_full(local_events, remote_events)
        self._checkpoint()

        self._apply(changes, stats, separate_cleanup=True)

        self.settings.set_sync_status(
            SyncStatus(
                last_sync_time=self._now(),
                continuation_token=token,
                last_event_modified=latest_modified(remote_events),
            )
        )
        if not remote_events:
            return "No events found in the sync window."
        return f"Successfully synced {len(remote_events)} events for the specified date range."

    def _baseline_token(self, start: datetime, end: datetime) -> ContinuationToken | None:
        try:
            token = self.source.fetch_baseline_token(start, end)
        except (RemoteSourceError, TokenExpiredError) as e:
            self.logger.warning(f"Could not obtain delta token: {e}")
            return None
        if token is None:
            self.logger.debug("Remote source returned no delta token for this window")
        return token

    # ------------------------------------------------------------------ #
    # Differential sync                                                    #
    # ------------------------------------------------------------------ #

    def _differential_sync(self, stats: SyncStats) -> str:
        status = self.settings.get_sync_status()
        token = status.continuation_token
        if not token:
            raise CalendarSyncError("No continuation token stored; run a full sync")

        final_token = None
        last_modified = status.last_event_modified
        pages = 0

        for page in self.source.fetch_delta_since(token):
            # A page that arrives after cancellation is discarded unapplied.
            self._checkpoint()
            pages += 1
            stats.fetched += len(page.events)
            self.logger.debug(
                f"Change page {pages}: {len(page.upserts)} upsert(s), "
                f"{len(page.deletions)} deletion(s)"
            )
            self._emit(
                SyncStage.FETCHING,
                f"Fetched change page {pages} ({stats.fetched} changes so far)",
                stats,
                completed=stats.fetched,
            )

            self._emit(
                SyncStage.PROCESSING,
                f"Processing {len(page.events)} changes...",
                stats,
                total=len(page.events),
            )
            lookup = self.event_store.find_by_external_ids(e.external_id for e in page.events)
            changes = resolve_delta(lookup, page.events)
            self._apply(changes, stats)
            last_modified = latest_modified(page.events, last_modified)

            if page.done:
                final_token = page.delta_token
                break
            self._checkpoint()

        if final_token is None:
            self.logger.warning("Delta round ended without a new token, keeping the previous one")
            final_token = token

        self.settings.set_sync_status(
            SyncStatus(
                last_sync_time=self._now(),
                continuation_token=final_token,
                last_event_modified=last_modified,
            )
        )
        if stats.fetched == 0:
            return "No changes since last sync."
        return f"Successfully synced {stats.fetched} changes since last sync."

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _apply(self, changes: ChangeSet, stats: SyncStats, separate_cleanup: bool = False):
        """Apply creates, updates, then deletes as one store transaction.

        Counters are only added to ``stats`` once the transaction commits.
        """
        total = len(changes)
        created = updated = deleted = 0
        synced_at = self._now()
        classify = self.event_types.classifier() if self.event_types else None

        def stamped(event):
            if classify is None or event.type_manually_set:
                return replace(event, synced_at=synced_at)
            return replace(event, synced_at=synced_at, type_id=classify(event))

        with self.event_store.transaction():
            self._emit(SyncStage.SAVING, "Saving events to database...", stats, total=total)
            for event in changes.creates:
                self.event_store.create_event(stamped(event))
                created += 1
            for event in changes.updates:
                if self.event_store.update_event(event.id, stamped(event)):
                    updated += 1
                else:
                    self.logger.warning(f"Local event {event.id} vanished before update")

            if changes.deletes and separate_cleanup:
                self._emit(
                    SyncStage.CLEANING,
                    "Cleaning up deleted events...",
                    stats,
                    completed=created + updated,
                    total=total,
                )
            for event in changes.deletes:
                if self.event_store.delete_event(event.id):
                    deleted += 1

        stats.created += created
        stats.updated += updated
        stats.deleted += deleted
        self.logger.debug(f"Applied {created} create(s), {updated} update(s), {deleted} delete(s)")

    def _checkpoint(self):
        if self._cancel_requested.is_set():
            raise SyncCancelledError("Sync was cancelled")

    def _now(self) -> str:
        return self._clock().isoformat()

    def _emit(
        self,
        stage: SyncStage,
        message: str,
        stats: SyncStats,
        completed: int = 0,
        total: int = 0,
    ):
        with self._lock:
            on_progress = self._on_progress
        progress = SyncProgress(stage, message, completed, total, stats.snapshot())
        self.logger.debug(f"[{stage.value}] {message}")
        self._notify(on_progress, progress)

    def _notify(self, callback, payload):
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            self.logger.exception(f"Error in {type(payload).__name__} callback")


def _result_stats(stats: SyncStats) -> ResultStats:
    return ResultStats(created=stats.created, updated=stats.updated, deleted=stats.deleted)
