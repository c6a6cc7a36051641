"""
Unit tests for stateless helpers in graph_calendar_sync.sync.utils.
"""

from datetime import date
from datetime import datetime
from datetime import timezone
from zoneinfo import ZoneInfo

import pytest

from graph_calendar_sync.models import LocalEvent
from graph_calendar_sync.models import ShowAs
from graph_calendar_sync.models import SyncConfig
from graph_calendar_sync.sync.utils import all_day_range
from graph_calendar_sync.sync.utils import differing_fields
from graph_calendar_sync.sync.utils import latest_modified
from graph_calendar_sync.sync.utils import local_fields_from_remote
from graph_calendar_sync.sync.utils import normalize_categories
from graph_calendar_sync.sync.utils import normalize_instant
from graph_calendar_sync.sync.utils import parse_instant
from graph_calendar_sync.sync.utils import window_bounds
from tests.conftest import make_all_day
from tests.conftest import make_remote

# ---------------------------------------------------------------------------
# all_day_range
# ---------------------------------------------------------------------------


class TestAllDayRange:
    def test_single_day(self):
        """Remote end is the next day; local covers only the start day."""
        assert all_day_range("2026-03-10", "2026-03-11") == (date(2026, 3, 10), date(2026, 3, 10))

    def test_multi_day(self):
        first, last = all_day_range("2026-03-10", "2026-03-13")
        assert (first, last) == (date(2026, 3, 10), date(2026, 3, 12))
        assert (last - first).days + 1 == 3

    def test_month_end(self):
        """An event ending on the 1st of the next month covers the last day only."""
        assert all_day_range("2026-04-30", "2026-05-01") == (date(2026, 4, 30), date(2026, 4, 30))

    def test_year_end(self):
        assert all_day_range("2026-12-31", "2027-01-01") == (
            date(2026, 12, 31),
            date(2026, 12, 31),
        )

    def test_leap_day(self):
        assert all_day_range("2028-02-29", "2028-03-01") == (date(2028, 2, 29), date(2028, 2, 29))

    def test_leap_day_span(self):
        first, last = all_day_range("2028-02-28", "2028-03-01")
        assert (first, last) == (date(2028, 2, 28), date(2028, 2, 29))

    def test_datetime_boundaries_use_date_part(self):
        """Graph sends all-day boundaries as midnight datetimes."""
        assert all_day_range("2026-03-10T00:00:00.0000000", "2026-03-11T00:00:00.0000000") == (
            date(2026, 3, 10),
            date(2026, 3, 10),
        )

    def test_missing_end_is_single_day(self):
        assert all_day_range("2026-03-10", "") == (date(2026, 3, 10), date(2026, 3, 10))

    def test_non_advancing_end_is_single_day(self):
        assert all_day_range("2026-03-10", "2026-03-10") == (date(2026, 3, 10), date(2026, 3, 10))


# ---------------------------------------------------------------------------
# Instants and categories
# ---------------------------------------------------------------------------


class TestInstants:
    def test_seven_digit_fraction_is_truncated(self):
        parsed = parse_instant("2026-03-01T10:00:00.1234567")
        assert parsed == datetime(2026, 3, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_trailing_z(self):
        assert parse_instant("2026-03-01T10:00:00Z").tzinfo is not None

    def test_naive_uses_assumed_zone(self):
        tz = ZoneInfo("Europe/Amsterdam")
        assert parse_instant("2026-03-01T10:00:00", assume_tz=tz).utcoffset().total_seconds() == 3600

    def test_equivalent_instants_normalize_equal(self):
        assert normalize_instant("2026-03-01T10:00:00Z") == normalize_instant(
            "2026-03-01T11:00:00+01:00"
        )
        assert normalize_instant("2026-03-01T10:00:00.0000000") == normalize_instant(
            "2026-03-01T10:00:00+00:00"
        )

    def test_invalid_instant_raises(self):
        with pytest.raises(ValueError):
            parse_instant("not a date")


class TestCategories:
    def test_string_is_split_and_trimmed(self):
        assert normalize_categories(" Work, Travel ,,") == frozenset({"Work", "Travel"})

    def test_iterable_is_deduplicated(self):
        assert normalize_categories(["A", "B", "A", " "]) == frozenset({"A", "B"})

    def test_none_is_empty(self):
        assert normalize_categories(None) == frozenset()


# ---------------------------------------------------------------------------
# Field comparison
# ---------------------------------------------------------------------------


class TestDifferingFields:
    def _local_copy(self, remote) -> LocalEvent:
        return LocalEvent(external_id=remote.external_id, **local_fields_from_remote(remote))

    def test_identical_event_has_no_diff(self):
        remote = make_remote("A", categories=frozenset({"x"}), show_as=ShowAs.FREE)
        assert differing_fields(self._local_copy(remote), remote) == []

    def test_category_order_is_irrelevant(self):
        remote = make_remote("A", categories=frozenset({"b", "a"}))
        local = self._local_copy(remote)
        local.categories = normalize_categories("a,b")
        assert differing_fields(local, remote) == []

    def test_title_change_detected(self):
        remote = make_remote("A", title="New")
        local = self._local_copy(make_remote("A", title="Old"))
        assert differing_fields(local, remote) == ["title"]

    def test_same_instant_different_offset_is_equal(self):
        remote = make_remote("A", start="2026-03-02T11:00:00+01:00", end="2026-03-02T12:00:00+01:00")
        local = self._local_copy(make_remote("A"))
        assert differing_fields(local, remote) == []

    def test_all_day_stored_inclusive_matches_remote_exclusive(self):
        remote = make_all_day("A", "2026-03-10", "2026-03-12")
        local = self._local_copy(remote)
        assert local.start == "2026-03-10"
        assert local.end == "2026-03-11"
        assert differing_fields(local, remote) == []


# ---------------------------------------------------------------------------
# Window bounds and lastModified
# ---------------------------------------------------------------------------


def test_window_bounds_cover_whole_days():
    tz = ZoneInfo("America/New_York")
    start, end = window_bounds(SyncConfig(date(2026, 3, 1), date(2026, 3, 7)), tz)
    assert (start.date(), start.hour, start.minute) == (date(2026, 3, 1), 0, 0)
    assert (end.date(), end.hour, end.minute, end.second) == (date(2026, 3, 7), 23, 59, 59)
    assert start.tzinfo is tz


def test_latest_modified_picks_newest():
    events = [
        make_remote("A", last_modified="2026-03-01T10:00:00Z"),
        make_remote("B", last_modified="2026-03-05T10:00:00.1234567Z"),
        make_remote("C"),
    ]
    assert latest_modified(events, "2026-03-02T00:00:00Z") == "2026-03-05T10:00:00.1234567Z"


def test_latest_modified_keeps_current_when_newer():
    events = [make_remote("A", last_modified="2026-03-01T10:00:00Z")]
    assert latest_modified(events, "2026-04-01T00:00:00Z") == "2026-04-01T00:00:00Z"


def test_latest_modified_ignores_unparsable_values():
    events = [make_remote("A", last_modified="garbage")]
    assert latest_modified(events, "also garbage") is None
