"""
Pure data models — no sqlite or HTTP imports.
"""

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import date
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import NewType

DEFAULT_STATE_DB = Path.home() / ".local/share/graph-calendar-sync/calendar.db"
DEFAULT_CONFIG = Path.home() / ".config/graph-calendar-sync.conf"

# Windows wider than this are rejected by set_sync_config().
MAX_SYNC_WINDOW_DAYS = 365
DEFAULT_SYNC_WINDOW_DAYS = 7

# Opaque continuation blob handed out by the remote source. Never parsed.
ContinuationToken = NewType("ContinuationToken", str)


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class AlreadyRunningError(CalendarSyncError):
    """start() was called while a sync run is in progress."""


class OfflineError(CalendarSyncError):
    """The caller reported no network connectivity."""


class InvalidRangeError(CalendarSyncError):
    """The sync window is empty, inverted or too wide."""


class TokenExpiredError(CalendarSyncError):
    """The remote source rejected the stored continuation token."""


class SyncCancelledError(CalendarSyncError):
    """Raised inside a run when cancellation is observed at a page boundary."""


class RemoteSourceError(CalendarSyncError):
    """Any other failure talking to the remote calendar."""


class EventTypeError(CalendarSyncError):
    """An event type or classification rule is unknown or invalid."""


class ShowAs(str, Enum):
    FREE = "free"
    TENTATIVE = "tentative"
    BUSY = "busy"
    OOF = "oof"
    WORKING_ELSEWHERE = "workingElsewhere"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "ShowAs":
        """Map a raw availability string onto the enum, defaulting to busy."""
        if not value:
            return cls.BUSY
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class RuleField(str, Enum):
    """Event attributes a classification rule can test."""

    TITLE = "title"
    IS_ALL_DAY = "is_all_day"
    SHOW_AS = "show_as"
    CATEGORIES = "categories"


class RuleOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    IS_EMPTY = "is_empty"


class SyncStage(str, Enum):
    FETCHING = "fetching"
    PROCESSING = "processing"
    SAVING = "saving"
    CLEANING = "cleaning"


class SyncMode(str, Enum):
    FULL = "full"
    DIFFERENTIAL = "differential"


class EngineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class LocalEvent:
    """An event row in the local store."""

    title: str
    start: str
    end: str
    description: str = ""
    is_all_day: bool = False
    show_as: ShowAs = ShowAs.BUSY
    categories: frozenset[str] = field(default_factory=frozenset)
    external_id: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    synced_at: str | None = None
    # Local-only classification; never compared against or sent to the remote.
    type_id: int | None = None
    type_manually_set: bool = False

    @property
    def is_synced(self) -> bool:
        return self.external_id is not None


@dataclass
class EventType:
    """A user-defined label assigned to local events; at most one is the default."""

    name: str
    color: str = "#1890ff"
    is_default: bool = False
    id: int | None = None


@dataclass
class TypeRule:
    """Assigns ``target_type_id`` to events whose ``field_name`` matches.

    Rules are tried in ascending ``priority``; the first match wins.
    ``field_name`` and ``operator`` hold RuleField / RuleOperator values.
    """

    name: str
    priority: int
    field_name: str
    operator: str
    value: str = ""
    target_type_id: int | None = None
    id: int | None = None


@dataclass
class RemoteEvent:
    """An event as reported by the remote calendar.

    For all-day events ``end`` follows the remote convention: it is the day
    *after* the last included day. Deletion markers only carry
    ``external_id`` and ``deleted=True``.
    """

    external_id: str
    title: str = ""
    start: str = ""
    end: str = ""
    description: str = ""
    is_all_day: bool = False
    show_as: ShowAs = ShowAs.BUSY
    categories: frozenset[str] = field(default_factory=frozenset)
    deleted: bool = False
    last_modified: str | None = None

    @classmethod
    def removed(cls, external_id: str) -> "RemoteEvent":
        return cls(external_id=external_id, deleted=True)


@dataclass
class SyncConfig:
    """Window of remote events fetched by a full sync (both ends inclusive)."""

    start_date: date
    end_date: date

    @classmethod
    def default(cls, today: date | None = None) -> "SyncConfig":
        today = today or date.today()
        return cls(start_date=today - timedelta(days=DEFAULT_SYNC_WINDOW_DAYS), end_date=today)

    def validate(self) -> None:
        if self.start_date is None or self.end_date is None:
            raise InvalidRangeError("Sync window requires both a start and an end date")
        if self.start_date > self.end_date:
            raise InvalidRangeError(
                f"Sync window start {self.start_date.isoformat()} is after "
                f"end {self.end_date.isoformat()}"
            )
        if (self.end_date - self.start_date).days > MAX_SYNC_WINDOW_DAYS:
            raise InvalidRangeError(
                f"Sync window may span at most {MAX_SYNC_WINDOW_DAYS} days"
            )

    def to_dict(self) -> dict:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncConfig":
        return cls(
            start_date=date.fromisoformat(data["start_date"]),
            end_date=date.fromisoformat(data["end_date"]),
        )


@dataclass
class SyncStatus:
    """Persisted bookkeeping of the last successful sync."""

    last_sync_time: str | None = None
    continuation_token: ContinuationToken | None = None
    last_event_modified: str | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.last_sync_time is None
            and self.continuation_token is None
            and self.last_event_modified is None
        )

    def to_dict(self) -> dict:
        # Unset values are dropped rather than stored as null.
        data = {
            "last_sync_time": self.last_sync_time,
            "continuation_token": self.continuation_token,
            "last_event_modified": self.last_event_modified,
        }
        return {k: v for k, v in data.items() if v}

    @classmethod
    def from_dict(cls, data: dict) -> "SyncStatus":
        token = data.get("continuation_token") or None
        return cls(
            last_sync_time=data.get("last_sync_time") or None,
            continuation_token=ContinuationToken(token) if token else None,
            last_event_modified=data.get("last_event_modified") or None,
        )


@dataclass
class SyncStats:
    """Running counters for a sync operation."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0

    def snapshot(self) -> "SyncStats":
        return replace(self)


@dataclass
class SyncProgress:
    stage: SyncStage
    message: str
    completed: int = 0
    total: int = 0
    stats: SyncStats = field(default_factory=SyncStats)


@dataclass
class ResultStats:
    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.deleted

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "total": self.total,
        }


@dataclass
class SyncResult:
    """Outcome of one sync run, handed once to the result callback."""

    success: bool
    message: str
    mode: SyncMode
    stats: ResultStats = field(default_factory=ResultStats)
    errors: list[str] = field(default_factory=list)
    outcome: EngineState = EngineState.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.outcome is EngineState.CANCELLED
