"""
SQLite connection, schema and migrations for the local calendar store.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from graph_calendar_sync.models import CalendarSyncError

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPE = "Work"
DEFAULT_EVENT_TYPE_COLOR = "#52c41a"

# Columns added after the first release, with their DDL type clause.
_LATER_EVENT_COLUMNS = {
    "show_as": "TEXT DEFAULT 'busy'",
    "categories": "TEXT",
    "synced_at": "TEXT",
    "type_id": "INTEGER REFERENCES event_types(id)",
    "type_manually_set": "INTEGER NOT NULL DEFAULT 0",
}


class StateDatabase:
    """Owns the SQLite connection shared by the event store and sync settings."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._depth = 0

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open (creating if needed) the database and bring its schema up to date."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # The sync engine may run on a worker thread; it is the only writer
        # while a run is active.
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()
        self.migrate_if_needed()

    def _init_schema(self):
        """Create the events, sync_metadata and event type tables if they don't exist.

        A fresh database gets one default event type, "Work".
        """
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                graph_id TEXT UNIQUE,
                title TEXT NOT NULL,
                description TEXT,
                start_date TEXT NOT NULL,
                end_date TEXT,
                is_all_day INTEGER NOT NULL DEFAULT 0,
                show_as TEXT DEFAULT 'busy',
                categories TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                synced_at TEXT,
                type_id INTEGER REFERENCES event_types(id),
                type_manually_set INTEGER NOT NULL DEFAULT 0
            );
            CREATE INDEX IF NOT EXISTS idx_events_graph_id ON events(graph_id);
            CREATE INDEX IF NOT EXISTS idx_events_start_date ON events(start_date);

            CREATE TABLE IF NOT EXISTS sync_metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS event_types (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                color TEXT DEFAULT '#1890ff',
                is_default INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS event_type_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                priority INTEGER NOT NULL,
                field_name TEXT NOT NULL,
                operator TEXT NOT NULL,
                value TEXT,
                target_type_id INTEGER REFERENCES event_types(id),
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
        """)
        (type_count,) = self.conn.execute("SELECT COUNT(*) FROM event_types").fetchone()
        if type_count == 0:
            self.conn.execute(
                "INSERT INTO event_types (name, color, is_default) VALUES (?, ?, 1)",
                (DEFAULT_EVENT_TYPE, DEFAULT_EVENT_TYPE_COLOR),
            )
        self.conn.commit()

    def migrate_if_needed(self):
        """Add columns that databases created by older versions lack."""
        cursor = self.conn.execute("PRAGMA table_info(events)")
        columns = {row["name"] for row in cursor.fetchall()}
        missing = [name for name in _LATER_EVENT_COLUMNS if name not in columns]
        if not missing:
            return

        for name in missing:
            self.conn.execute(f"ALTER TABLE events ADD COLUMN {name} {_LATER_EVENT_COLUMNS[name]}")
        self.conn.commit()
        logger.info(f"Migrated events table: added column(s) {', '.join(missing)}")

    @contextmanager
    def transaction(self):
        """Group writes into one commit; roll back everything on error.

        Nested use joins the outermost transaction.
        """
        if not self.conn:
            raise CalendarSyncError("State database is not connected")
        self._depth += 1
        try:
            yield self.conn
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self.conn.rollback()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self.conn.commit()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if not self.conn:
            raise CalendarSyncError("State database is not connected")
        return self.conn.execute(sql, params)

    def commit(self):
        """Commit pending transactions unless inside transaction()."""
        if self.conn and self._depth == 0:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
