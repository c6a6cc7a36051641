"""
Shared pytest fixtures and event builders.
"""

from datetime import date
from datetime import datetime
from datetime import timezone

import pytest

from graph_calendar_sync.db import StateDatabase
from graph_calendar_sync.event_types import EventTypeStore
from graph_calendar_sync.models import LocalEvent
from graph_calendar_sync.models import RemoteEvent
from graph_calendar_sync.models import ShowAs
from graph_calendar_sync.models import SyncConfig
from graph_calendar_sync.settings import SyncSettings
from graph_calendar_sync.store import EventStore
from graph_calendar_sync.sync.engine import SyncEngine

WINDOW = SyncConfig(start_date=date(2026, 3, 1), end_date=date(2026, 3, 31))
FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_remote(
    external_id: str,
    title: str = "Test Event",
    start: str = "2026-03-02T10:00:00Z",
    end: str = "2026-03-02T11:00:00Z",
    **kwargs,
) -> RemoteEvent:
    """Return a timed RemoteEvent with sensible defaults."""
    return RemoteEvent(external_id=external_id, title=title, start=start, end=end, **kwargs)


def make_all_day(external_id: str, first: str, end_exclusive: str, **kwargs) -> RemoteEvent:
    """Return an all-day RemoteEvent using the remote (exclusive end) convention."""
    return RemoteEvent(
        external_id=external_id,
        title=kwargs.pop("title", "All Day"),
        start=first,
        end=end_exclusive,
        is_all_day=True,
        **kwargs,
    )


def make_local(title: str = "Local Event", **kwargs) -> LocalEvent:
    """Return a local-only LocalEvent (no external id)."""
    kwargs.setdefault("start", "2026-03-03T09:00:00+00:00")
    kwargs.setdefault("end", "2026-03-03T09:30:00+00:00")
    kwargs.setdefault("show_as", ShowAs.BUSY)
    return LocalEvent(title=title, **kwargs)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def store(state_db):
    return EventStore(state_db)


@pytest.fixture
def settings(state_db, store):
    settings = SyncSettings(state_db, store)
    settings.set_sync_config(WINDOW)
    return settings


@pytest.fixture
def event_types(state_db):
    return EventTypeStore(state_db)


@pytest.fixture
def make_engine(store, settings):
    """Factory: build a SyncEngine around a given remote source."""

    def _make(source, event_types=None):
        return SyncEngine(
            source,
            store,
            settings,
            tz=timezone.utc,
            clock=lambda: FIXED_NOW,
            event_types=event_types,
        )

    return _make
