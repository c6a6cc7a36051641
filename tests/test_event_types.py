"""
Unit tests for rule evaluation and EventTypeStore.
"""

import pytest

from graph_calendar_sync.db import DEFAULT_EVENT_TYPE
from graph_calendar_sync.event_types import classify
from graph_calendar_sync.event_types import evaluate_rule
from graph_calendar_sync.models import EventType
from graph_calendar_sync.models import EventTypeError
from graph_calendar_sync.models import ShowAs
from graph_calendar_sync.models import TypeRule
from tests.conftest import make_local


def _rule(field_name, operator, value="", target=7, priority=1, rule_id=None):
    return TypeRule(
        name=f"{field_name} {operator}",
        priority=priority,
        field_name=field_name,
        operator=operator,
        value=value,
        target_type_id=target,
        id=rule_id,
    )


# ---------------------------------------------------------------------------
# evaluate_rule / classify
# ---------------------------------------------------------------------------


class TestEvaluateRule:
    def test_equals_is_case_sensitive(self):
        event = make_local("Standup")
        assert evaluate_rule(_rule("title", "equals", "Standup"), event)
        assert not evaluate_rule(_rule("title", "equals", "standup"), event)

    def test_contains_ignores_case(self):
        assert evaluate_rule(_rule("title", "contains", "STAND"), make_local("Daily standup"))

    def test_is_empty_treats_whitespace_as_empty(self):
        assert evaluate_rule(_rule("title", "is_empty"), make_local("   "))
        assert not evaluate_rule(_rule("title", "is_empty"), make_local("x"))

    def test_all_day_is_compared_as_text(self):
        rule = _rule("is_all_day", "equals", "true")
        assert evaluate_rule(rule, make_local(is_all_day=True))
        assert not evaluate_rule(rule, make_local(is_all_day=False))

    def test_show_as_uses_remote_value(self):
        event = make_local(show_as=ShowAs.WORKING_ELSEWHERE)
        assert evaluate_rule(_rule("show_as", "equals", "workingElsewhere"), event)

    def test_categories_match_the_stored_joined_form(self):
        event = make_local(categories=frozenset({"Red", "Blue"}))
        assert evaluate_rule(_rule("categories", "equals", "Blue,Red"), event)
        assert evaluate_rule(_rule("categories", "contains", "red"), event)
        assert evaluate_rule(_rule("categories", "is_empty"), make_local())

    def test_unknown_field_or_operator_never_matches(self):
        event = make_local("Standup")
        assert not evaluate_rule(_rule("location", "contains", "Standup"), event)
        assert not evaluate_rule(_rule("title", "starts_with", "Stand"), event)


class TestClassify:
    def test_lowest_priority_wins(self):
        rules = [
            _rule("title", "contains", "sync", target=2, priority=5),
            _rule("title", "contains", "sync", target=1, priority=1),
        ]
        assert classify(make_local("Weekly sync"), rules, default_type_id=9) == 1

    def test_equal_priorities_fall_back_to_insertion_order(self):
        rules = [
            _rule("title", "contains", "sync", target=2, rule_id=2),
            _rule("title", "contains", "sync", target=1, rule_id=1),
        ]
        assert classify(make_local("Weekly sync"), rules, default_type_id=9) == 1

    def test_no_match_uses_default(self):
        rules = [_rule("title", "equals", "Standup")]
        assert classify(make_local("Lunch"), rules, default_type_id=9) == 9

    def test_no_match_and_no_default(self):
        assert classify(make_local("Lunch"), [], default_type_id=None) is None


# ---------------------------------------------------------------------------
# EventTypeStore
# ---------------------------------------------------------------------------


class TestEventTypeStore:
    def test_new_database_has_default_type(self, event_types):
        (work,) = event_types.get_types()
        assert work.name == DEFAULT_EVENT_TYPE
        assert work.is_default
        assert event_types.default_type_id() == work.id

    def test_new_default_replaces_old_one(self, event_types):
        travel = event_types.create_type(EventType(name="Travel", is_default=True))
        assert event_types.default_type_id() == travel.id
        assert [t.name for t in event_types.get_types() if t.is_default] == ["Travel"]

    def test_set_default_type(self, event_types):
        travel = event_types.create_type(EventType(name="Travel"))
        event_types.set_default_type(travel.id)
        assert event_types.default_type_id() == travel.id

    def test_duplicate_name_is_rejected(self, event_types):
        with pytest.raises(EventTypeError, match="already exists"):
            event_types.create_type(EventType(name=DEFAULT_EVENT_TYPE))
        assert len(event_types.get_types()) == 1

    def test_rules_are_returned_in_priority_order(self, event_types):
        work_id = event_types.default_type_id()
        event_types.add_rule(_rule("title", "contains", "b", target=work_id, priority=2))
        event_types.add_rule(_rule("title", "contains", "a", target=work_id, priority=1))
        assert [r.value for r in event_types.get_rules()] == ["a", "b"]

    @pytest.mark.parametrize(
        "rule",
        [
            _rule("location", "contains", "x"),
            _rule("title", "starts_with", "x"),
            _rule("title", "contains", "x", target=999),
        ],
    )
    def test_invalid_rules_are_rejected(self, event_types, rule):
        with pytest.raises(EventTypeError):
            event_types.add_rule(rule)
        assert event_types.get_rules() == []

    def test_delete_rule(self, event_types):
        rule = event_types.add_rule(
            _rule("title", "contains", "x", target=event_types.default_type_id())
        )
        assert event_types.delete_rule(rule.id) is True
        assert event_types.delete_rule(rule.id) is False

    def test_set_event_type_marks_manual(self, event_types, store):
        event = store.create_event(make_local())
        travel = event_types.create_type(EventType(name="Travel"))

        assert event_types.set_event_type(event.id, travel.id)

        stored = store.get_event(event.id)
        assert stored.type_id == travel.id
        assert stored.type_manually_set

    def test_set_event_type_on_missing_event(self, event_types):
        assert event_types.set_event_type(999, event_types.default_type_id()) is False

    def test_delete_type_untypes_events_and_drops_rules(self, event_types, store):
        travel = event_types.create_type(EventType(name="Travel"))
        event_types.add_rule(_rule("title", "contains", "flight", target=travel.id))
        event = store.create_event(make_local())
        event_types.set_event_type(event.id, travel.id)

        assert event_types.delete_type(travel.id)

        stored = store.get_event(event.id)
        assert (stored.type_id, stored.type_manually_set) == (None, False)
        assert event_types.get_rules() == []

    def test_reprocess_skips_manual_events(self, event_types, store):
        travel = event_types.create_type(EventType(name="Travel"))
        event_types.add_rule(_rule("title", "contains", "flight", target=travel.id))
        auto = store.create_event(make_local("Flight to Oslo"))
        manual = store.create_event(make_local("Flight home"))
        event_types.set_event_type(manual.id, event_types.default_type_id())
        untouched = store.create_event(make_local("Lunch"))

        processed, changed = event_types.reprocess(store.get_events())

        assert (processed, changed) == (2, 2)
        assert store.get_event(auto.id).type_id == travel.id
        assert store.get_event(manual.id).type_id == event_types.default_type_id()
        assert store.get_event(untouched.id).type_id == event_types.default_type_id()

    def test_reprocess_counts_only_changes(self, event_types, store):
        store.create_event(make_local(type_id=event_types.default_type_id()))
        assert event_types.reprocess(store.get_events()) == (1, 0)
