"""
Stateless normalization helpers shared by the resolver and the engine.
"""

import logging
import re
from collections.abc import Iterable
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from zoneinfo import ZoneInfo

from graph_calendar_sync.models import LocalEvent
from graph_calendar_sync.models import RemoteEvent
from graph_calendar_sync.models import ShowAs
from graph_calendar_sync.models import SyncConfig

_logger = logging.getLogger(__name__)

# Graph emits 7 fractional digits ("2024-03-01T10:00:00.0000000"); datetime
# only keeps microseconds, so anything past the sixth digit is dropped.
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

# Fields owned by the remote side. Anything else on a LocalEvent is local-only.
SYNCED_FIELDS = (
    "title",
    "description",
    "start",
    "end",
    "is_all_day",
    "show_as",
    "categories",
)


def normalize_categories(value) -> frozenset[str]:
    """Return categories as a set: trimmed, empties dropped, deduplicated.

    Accepts the comma-joined string stored in the events table as well as
    any iterable of strings.
    """
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(c.strip() for c in value if c and c.strip())


def join_categories(value) -> str:
    """Stored form of a category set: sorted and comma-joined."""
    return ",".join(sorted(normalize_categories(value)))


def parse_instant(value: str, assume_tz: tzinfo = timezone.utc) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Naive values are interpreted in ``assume_tz`` (UTC by default, which is
    what the remote source returns when asked for UTC).
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=assume_tz)
    return parsed


def normalize_instant(value: str) -> str:
    """Canonical UTC ISO form used for storage and exact comparison."""
    return parse_instant(value).astimezone(timezone.utc).isoformat()


def to_date(value: str) -> date:
    """Date part of an ISO date or datetime string, without any tz shift."""
    return date.fromisoformat(value.strip()[:10])


def all_day_range(start: str, end_exclusive: str) -> tuple[date, date]:
    """Convert a remote all-day span into (first_day, last_day) inclusive.

    The remote end is the day after the last included day. A missing or
    non-advancing end yields a single-day event.
    """
    first = to_date(start)
    if not end_exclusive:
        return first, first
    last = to_date(end_exclusive) - timedelta(days=1)
    if last < first:
        last = first
    return first, last


def local_fields_from_remote(remote: RemoteEvent) -> dict:
    """Return the synced fields of ``remote`` in local-store representation."""
    if remote.is_all_day:
        first, last = all_day_range(remote.start, remote.end)
        start, end = first.isoformat(), last.isoformat()
    else:
        start = normalize_instant(remote.start)
        end = normalize_instant(remote.end) if remote.end else start
    return {
        "title": remote.title,
        "description": remote.description or "",
        "start": start,
        "end": end,
        "is_all_day": bool(remote.is_all_day),
        "show_as": ShowAs.parse(remote.show_as),
        "categories": normalize_categories(remote.categories),
    }


def comparable_local(event: LocalEvent) -> dict:
    """Synced fields of a stored event, normalized for comparison.

    Local all-day events already use the inclusive convention, so only
    the date part of each boundary is kept.
    """
    if event.is_all_day:
        start = to_date(event.start).isoformat()
        end = to_date(event.end).isoformat() if event.end else start
    else:
        start = normalize_instant(event.start)
        end = normalize_instant(event.end) if event.end else start
    return {
        "title": event.title,
        "description": event.description or "",
        "start": start,
        "end": end,
        "is_all_day": bool(event.is_all_day),
        "show_as": ShowAs.parse(event.show_as),
        "categories": normalize_categories(event.categories),
    }


def differing_fields(local: LocalEvent, remote: RemoteEvent) -> list[str]:
    """Names of synced fields whose values differ between the two sides."""
    left = comparable_local(local)
    right = local_fields_from_remote(remote)
    return [name for name in SYNCED_FIELDS if left[name] != right[name]]


def resolve_timezone(name: str | None) -> tzinfo:
    """Return the named zone, or the machine's local zone when unset."""
    if name:
        return ZoneInfo(name)
    return datetime.now().astimezone().tzinfo


def window_bounds(config: SyncConfig, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return the aware [start-of-first-day, end-of-last-day] span of a window."""
    start = datetime.combine(config.start_date, time.min, tzinfo=tz)
    end = datetime.combine(config.end_date, time.max, tzinfo=tz)
    return start, end


def latest_modified(events: Iterable[RemoteEvent], current: str | None = None) -> str | None:
    """Return the most recent ``last_modified`` among events (or ``current``)."""
    best, best_at = current, None
    if current:
        try:
            best_at = parse_instant(current)
        except ValueError:
            _logger.debug(f"Ignoring unparsable stored lastModified {current!r}")
            best = None
    for event in events:
        if not event.last_modified:
            continue
        try:
            at = parse_instant(event.last_modified)
        except ValueError:
            _logger.debug(f"Ignoring unparsable lastModified {event.last_modified!r}")
            continue
        if best_at is None or at > best_at:
            best, best_at = event.last_modified, at
    return best
