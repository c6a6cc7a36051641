"""
Event types and the priority-ordered rules that assign them to local events.

Classification only reads fields the remote owns (title, all-day flag,
availability, categories) and only writes the local-only ``type_id``.
"""

import logging
import sqlite3
from collections.abc import Callable
from collections.abc import Sequence
from datetime import datetime
from datetime import timezone

from graph_calendar_sync.db import StateDatabase
from graph_calendar_sync.models import EventType
from graph_calendar_sync.models import EventTypeError
from graph_calendar_sync.models import LocalEvent
from graph_calendar_sync.models import RuleField
from graph_calendar_sync.models import RuleOperator
from graph_calendar_sync.models import ShowAs
from graph_calendar_sync.models import TypeRule
from graph_calendar_sync.sync.utils import join_categories

logger = logging.getLogger(__name__)

Classifier = Callable[[LocalEvent], int | None]

_TYPE_COLUMNS = "id, name, color, is_default"
_RULE_COLUMNS = "id, name, priority, field_name, operator, value, target_type_id"


def rule_field_value(field_name: str, event: LocalEvent) -> str | None:
    """The text a rule on ``field_name`` is matched against, or None if unknown."""
    if field_name == RuleField.TITLE:
        return event.title or ""
    if field_name == RuleField.IS_ALL_DAY:
        return "true" if event.is_all_day else "false"
    if field_name == RuleField.SHOW_AS:
        return ShowAs.parse(event.show_as).value
    if field_name == RuleField.CATEGORIES:
        return join_categories(event.categories)
    return None


def evaluate_rule(rule: TypeRule, event: LocalEvent) -> bool:
    """Return True when ``event`` satisfies ``rule``.

    ``equals`` is case-sensitive, ``contains`` is not, ``is_empty`` ignores
    whitespace. Unknown fields or operators never match.
    """
    value = rule_field_value(rule.field_name, event)
    if value is None:
        return False
    expected = rule.value or ""
    if rule.operator == RuleOperator.EQUALS:
        return value == expected
    if rule.operator == RuleOperator.CONTAINS:
        return expected.lower() in value.lower()
    if rule.operator == RuleOperator.IS_EMPTY:
        return not value.strip()
    return False


def classify(
    event: LocalEvent, rules: Sequence[TypeRule], default_type_id: int | None
) -> int | None:
    """Type id of the first matching rule (by priority), else the default type."""
    for rule in sorted(rules, key=lambda r: (r.priority, r.id or 0)):
        if evaluate_rule(rule, event):
            return rule.target_type_id
    return default_type_id


def _row_to_type(row: sqlite3.Row) -> EventType:
    return EventType(
        id=row["id"],
        name=row["name"],
        color=row["color"] or "",
        is_default=bool(row["is_default"]),
    )


def _row_to_rule(row: sqlite3.Row) -> TypeRule:
    return TypeRule(
        id=row["id"],
        name=row["name"],
        priority=row["priority"],
        field_name=row["field_name"],
        operator=row["operator"],
        value=row["value"] or "",
        target_type_id=row["target_type_id"],
    )


class EventTypeStore:
    """CRUD over ``event_types`` / ``event_type_rules`` and type assignment."""

    def __init__(self, db: StateDatabase):
        self.db = db

    # ------------------------------------------------------------------ #
    # Types                                                                #
    # ------------------------------------------------------------------ #

    def get_types(self) -> list[EventType]:
        cursor = self.db.execute(f"SELECT {_TYPE_COLUMNS} FROM event_types ORDER BY name")
        return [_row_to_type(row) for row in cursor.fetchall()]

    def get_type_by_name(self, name: str) -> EventType | None:
        cursor = self.db.execute(
            f"SELECT {_TYPE_COLUMNS} FROM event_types WHERE name = ?", (name,)
        )
        row = cursor.fetchone()
        return _row_to_type(row) if row else None

    def default_type_id(self) -> int | None:
        row = self.db.execute("SELECT id FROM event_types WHERE is_default = 1 LIMIT 1").fetchone()
        return row["id"] if row else None

    def create_type(self, event_type: EventType) -> EventType:
        """Insert a type; making it the default clears the flag on the others."""
        with self.db.transaction():
            if event_type.is_default:
                self.db.execute("UPDATE event_types SET is_default = 0")
            try:
                cursor = self.db.execute(
                    "INSERT INTO event_types (name, color, is_default) VALUES (?, ?, ?)",
                    (event_type.name, event_type.color, 1 if event_type.is_default else 0),
                )
            except sqlite3.IntegrityError:
                raise EventTypeError(f"Event type {event_type.name!r} already exists") from None
        logger.debug(f"Created event type {event_type.name!r}")
        return self._get_type(cursor.lastrowid)

    def set_default_type(self, type_id: int):
        if self._get_type(type_id) is None:
            raise EventTypeError(f"Unknown event type id {type_id}")
        with self.db.transaction():
            self.db.execute("UPDATE event_types SET is_default = (id = ?)", (type_id,))

    def delete_type(self, type_id: int) -> bool:
        """Remove a type with the rules targeting it; its events become untyped."""
        with self.db.transaction():
            self.db.execute("DELETE FROM event_type_rules WHERE target_type_id = ?", (type_id,))
            self.db.execute(
                "UPDATE events SET type_id = NULL, type_manually_set = 0 WHERE type_id = ?",
                (type_id,),
            )
            cursor = self.db.execute("DELETE FROM event_types WHERE id = ?", (type_id,))
        return cursor.rowcount > 0

    def _get_type(self, type_id: int) -> EventType | None:
        cursor = self.db.execute(
            f"SELECT {_TYPE_COLUMNS} FROM event_types WHERE id = ?", (type_id,)
        )
        row = cursor.fetchone()
        return _row_to_type(row) if row else None

    # ------------------------------------------------------------------ #
    # Rules                                                                #
    # ------------------------------------------------------------------ #

    def get_rules(self) -> list[TypeRule]:
        cursor = self.db.execute(
            f"SELECT {_RULE_COLUMNS} FROM event_type_rules ORDER BY priority ASC, id ASC"
        )
        return [_row_to_rule(row) for row in cursor.fetchall()]

    def add_rule(self, rule: TypeRule) -> TypeRule:
        """Validate and insert ``rule``; returns it with its new id."""
        try:
            RuleField(rule.field_name)
        except ValueError:
            raise EventTypeError(f"Unknown rule field {rule.field_name!r}") from None
        try:
            RuleOperator(rule.operator)
        except ValueError:
            raise EventTypeError(f"Unknown rule operator {rule.operator!r}") from None
        if rule.target_type_id is None or self._get_type(rule.target_type_id) is None:
            raise EventTypeError(f"Unknown event type id {rule.target_type_id}")

        cursor = self.db.execute(
            "INSERT INTO event_type_rules "
            "(name, priority, field_name, operator, value, target_type_id) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                rule.name,
                rule.priority,
                RuleField(rule.field_name).value,
                RuleOperator(rule.operator).value,
                rule.value,
                rule.target_type_id,
            ),
        )
        self.db.commit()
        row = self.db.execute(
            f"SELECT {_RULE_COLUMNS} FROM event_type_rules WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
        return _row_to_rule(row)

    def delete_rule(self, rule_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM event_type_rules WHERE id = ?", (rule_id,))
        self.db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------ #
    # Classification                                                       #
    # ------------------------------------------------------------------ #

    def classifier(self) -> Classifier:
        """Snapshot the current rules and default type into a callable."""
        rules = self.get_rules()
        default_type_id = self.default_type_id()
        return lambda event: classify(event, rules, default_type_id)

    def set_event_type(self, event_id: int, type_id: int | None) -> bool:
        """Assign a type by hand; sync will no longer reclassify the event."""
        if type_id is not None and self._get_type(type_id) is None:
            raise EventTypeError(f"Unknown event type id {type_id}")
        cursor = self.db.execute(
            "UPDATE events SET type_id = ?, type_manually_set = 1, updated_at = ? WHERE id = ?",
            (type_id, datetime.now(timezone.utc).isoformat(), event_id),
        )
        self.db.commit()
        return cursor.rowcount > 0

    def reprocess(self, events: Sequence[LocalEvent]) -> tuple[int, int]:
        """Reclassify every event in ``events`` not typed by hand.

        Returns (processed, changed).
        """
        classify_event = self.classifier()
        processed = changed = 0
        with self.db.transaction():
            for event in events:
                if event.type_manually_set:
                    continue
                processed += 1
                type_id = classify_event(event)
                if type_id != event.type_id:
                    self.db.execute(
                        "UPDATE events SET type_id = ? WHERE id = ?", (type_id, event.id)
                    )
                    changed += 1
        logger.info(f"Reclassified {processed} event(s), {changed} changed type")
        return processed, changed
