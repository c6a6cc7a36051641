"""
Local event store backed by the ``events`` table.
"""

import sqlite3
from collections.abc import Iterable
from datetime import datetime
from datetime import timezone

from graph_calendar_sync.db import StateDatabase
from graph_calendar_sync.models import LocalEvent
from graph_calendar_sync.models import ShowAs
from graph_calendar_sync.sync.utils import join_categories
from graph_calendar_sync.sync.utils import normalize_categories

_COLUMNS = (
    "id, graph_id, title, description, start_date, end_date, is_all_day, "
    "show_as, categories, created_at, updated_at, synced_at, type_id, type_manually_set"
)

# SQLite's default limit on host parameters is 999 on older builds.
_LOOKUP_CHUNK = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_event(row: sqlite3.Row) -> LocalEvent:
    return LocalEvent(
        id=row["id"],
        external_id=row["graph_id"],
        title=row["title"],
        description=row["description"] or "",
        start=row["start_date"],
        end=row["end_date"] or row["start_date"],
        is_all_day=bool(row["is_all_day"]),
        show_as=ShowAs.parse(row["show_as"]),
        categories=normalize_categories(row["categories"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        synced_at=row["synced_at"],
        type_id=row["type_id"],
        type_manually_set=bool(row["type_manually_set"]),
    )


class EventStore:
    """CRUD over local events, keyed by local id and optional Graph id."""

    def __init__(self, db: StateDatabase):
        self.db = db

    def transaction(self):
        return self.db.transaction()

    def get_events(self) -> list[LocalEvent]:
        cursor = self.db.execute(f"SELECT {_COLUMNS} FROM events ORDER BY start_date, id")
        return [_row_to_event(row) for row in cursor.fetchall()]

    def get_synced_events(self) -> list[LocalEvent]:
        """Events that came from the remote calendar (non-null graph_id)."""
        cursor = self.db.execute(
            f"SELECT {_COLUMNS} FROM events WHERE graph_id IS NOT NULL ORDER BY start_date, id"
        )
        return [_row_to_event(row) for row in cursor.fetchall()]

    def get_event(self, event_id: int) -> LocalEvent | None:
        cursor = self.db.execute(f"SELECT {_COLUMNS} FROM events WHERE id = ?", (event_id,))
        row = cursor.fetchone()
        return _row_to_event(row) if row else None

    def find_by_external_ids(self, external_ids: Iterable[str]) -> dict[str, LocalEvent]:
        """Return {graph_id: event} for the ids that exist locally."""
        ids = list(dict.fromkeys(external_ids))
        found: dict[str, LocalEvent] = {}
        for i in range(0, len(ids), _LOOKUP_CHUNK):
            chunk = ids[i : i + _LOOKUP_CHUNK]
            placeholders = ",".join("?" * len(chunk))
            cursor = self.db.execute(
                f"SELECT {_COLUMNS} FROM events WHERE graph_id IN ({placeholders})",
                tuple(chunk),
            )
            for row in cursor.fetchall():
                found[row["graph_id"]] = _row_to_event(row)
        return found

    def create_event(self, event: LocalEvent) -> LocalEvent:
        """Insert ``event`` and return it with its new id and timestamps."""
        now = _now()
        cursor = self.db.execute(
            "INSERT INTO events "
            "(graph_id, title, description, start_date, end_date, is_all_day, "
            " show_as, categories, created_at, updated_at, synced_at, type_id, type_manually_set) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                event.external_id,
                event.title,
                event.description,
                event.start,
                event.end,
                1 if event.is_all_day else 0,
                ShowAs.parse(event.show_as).value,
                join_categories(event.categories),
                now,
                now,
                event.synced_at,
                event.type_id,
                1 if event.type_manually_set else 0,
            ),
        )
        self.db.commit()
        return self.get_event(cursor.lastrowid)

    def update_event(self, event_id: int, event: LocalEvent) -> LocalEvent | None:
        """Overwrite the row ``event_id``; returns None when it does not exist.

        ``synced_at`` is only written when the incoming event carries one, so
        manual edits never stamp it.
        """
        cursor = self.db.execute(
            "UPDATE events SET "
            "graph_id = ?, title = ?, description = ?, start_date = ?, end_date = ?, "
            "is_all_day = ?, show_as = ?, categories = ?, updated_at = ?, "
            "synced_at = COALESCE(?, synced_at), type_id = ?, type_manually_set = ? "
            "WHERE id = ?",
            (
                event.external_id,
                event.title,
                event.description,
                event.start,
                event.end,
                1 if event.is_all_day else 0,
                ShowAs.parse(event.show_as).value,
                join_categories(event.categories),
                _now(),
                event.synced_at,
                event.type_id,
                1 if event.type_manually_set else 0,
                event_id,
            ),
        )
        self.db.commit()
        if cursor.rowcount == 0:
            return None
        return self.get_event(event_id)

    def delete_event(self, event_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM events WHERE id = ?", (event_id,))
        self.db.commit()
        return cursor.rowcount > 0

    def delete_all(self) -> int:
        cursor = self.db.execute("DELETE FROM events")
        self.db.commit()
        return cursor.rowcount

    def count(self) -> tuple[int, int]:
        """Return (total events, synced events)."""
        row = self.db.execute(
            "SELECT COUNT(*), COUNT(graph_id) FROM events"
        ).fetchone()
        return row[0], row[1]
