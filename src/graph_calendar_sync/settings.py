"""
Persisted sync window and sync status, stored as JSON rows in ``sync_metadata``.
"""

import json
import logging

from graph_calendar_sync.db import StateDatabase
from graph_calendar_sync.models import SyncConfig
from graph_calendar_sync.models import SyncStatus
from graph_calendar_sync.store import EventStore

logger = logging.getLogger(__name__)

_CONFIG_KEY = "sync_config"
_STATUS_KEY = "sync_status"


class SyncSettings:
    """Reads and writes SyncConfig and SyncStatus.

    The two live in independent rows: changing the window never touches the
    status, and clearing the status never touches the window.
    """

    def __init__(self, db: StateDatabase, event_store: EventStore):
        self.db = db
        self.event_store = event_store

    def _get(self, key: str) -> dict | None:
        row = self.db.execute("SELECT value FROM sync_metadata WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning(f"Ignoring corrupt {key} entry in state database")
            return None

    def _put(self, key: str, value: dict):
        self.db.execute(
            "INSERT INTO sync_metadata (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, json.dumps(value)),
        )

    def get_sync_config(self) -> SyncConfig:
        """Return the stored window, or the default (last 7 days) if none is stored."""
        data = self._get(_CONFIG_KEY)
        if data:
            try:
                return SyncConfig.from_dict(data)
            except (KeyError, TypeError, ValueError):
                logger.warning("Stored sync window is invalid, using the default")
        return SyncConfig.default()

    def set_sync_config(self, config: SyncConfig):
        """Persist ``config``; raises InvalidRangeError if the window is bad."""
        config.validate()
        with self.db.transaction():
            self._put(_CONFIG_KEY, config.to_dict())
        logger.debug(f"Sync window set to {config.start_date} .. {config.end_date}")

    def get_sync_status(self) -> SyncStatus:
        data = self._get(_STATUS_KEY)
        return SyncStatus.from_dict(data) if data else SyncStatus()

    def set_sync_status(self, status: SyncStatus):
        """Replace the status in a single write."""
        with self.db.transaction():
            self._put(_STATUS_KEY, status.to_dict())

    def clear_sync_data(self):
        """Forget the last sync and continuation token; events are kept."""
        with self.db.transaction():
            self.db.execute("DELETE FROM sync_metadata WHERE key = ?", (_STATUS_KEY,))
        logger.info("Sync data cleared")

    def clear_all_data(self) -> int:
        """Delete every local event, then the sync status. Returns events deleted."""
        with self.db.transaction():
            deleted = self.event_store.delete_all()
            self.db.execute("DELETE FROM sync_metadata WHERE key = ?", (_STATUS_KEY,))
        logger.info(f"All data cleared: removed {deleted} event(s)")
        return deleted
