from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any

import pytest

from crm_automation.automation import conditions
from crm_automation.automation.conditions import evaluate_conditions, get_field_value, referenced_fields
from crm_automation.automation.schemas import ConditionAll, ConditionAny, ConditionLeaf, RecordSnapshot, parse_condition


def _record(**fields: object) -> RecordSnapshot:
    return RecordSnapshot(id=uuid.uuid4(), module="deals", owner_id="owner-1", stage="qualify", fields=dict(fields))


def test_empty_groups_and_missing_group() -> None:
    record = _record()
    assert evaluate_conditions(None, record) is True
    assert evaluate_conditions(ConditionAll(all=[]), record) is True
    assert evaluate_conditions(ConditionAny(any=[]), record) is False


@pytest.mark.parametrize(
    ("op", "value", "expected"),
    [
        ("eq", "Web", True),
        ("ne", "Web", False),
        ("contains", "we", True),
        ("not_contains", "xyz", True),
        ("starts_with", "W", True),
        ("ends_with", "eb", True),
        ("in", ["Referral", "Web"], True),
        ("not_in", ["Referral"], True),
    ],
)
def test_string_operators(op: str, value: object, expected: bool) -> None:
    condition = ConditionLeaf(field="source", op=op, value=value)
    assert evaluate_conditions(condition, _record(source="Web")) is expected


def test_numeric_comparisons_coerce_numeric_strings() -> None:
    record = _record(amount="15000")
    assert evaluate_conditions({"field": "amount", "op": "gt", "value": 10000}, record) is True
    assert evaluate_conditions({"field": "amount", "op": "lte", "value": 15000}, record) is True
    assert evaluate_conditions({"field": "amount", "op": "lt", "value": "abc"}, record) is False


def test_missing_paths_never_raise() -> None:
    record = _record(address={"city": "Austin"})
    assert evaluate_conditions({"field": "address.zip", "op": "eq", "value": "73301"}, record) is False
    assert evaluate_conditions({"field": "address.zip", "op": "is_empty"}, record) is True
    assert evaluate_conditions({"field": "address.city.name", "op": "gt", "value": 1}, record) is False
    assert evaluate_conditions({"field": "address.city", "op": "not_empty"}, record) is True
    assert get_field_value(record, "address.city") == "Austin"


def test_malformed_tree_evaluates_false() -> None:
    record = _record(source="Web")
    assert evaluate_conditions({"field": "source", "op": "matches_regex", "value": ".*"}, record) is False
    assert evaluate_conditions({"logic": "XOR", "conditions": []}, record) is False


def test_any_short_circuits_before_bad_comparison() -> None:
    record = _record(amount=10, labels=["vip"])
    condition = {
        "any": [
            {"field": "labels", "op": "contains", "value": "vip"},
            {"field": "amount", "op": "gt", "value": {"nested": True}},
        ]
    }
    assert evaluate_conditions(condition, record) is True


def _record_visited(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    visited: list[str] = []
    original = conditions._evaluate_leaf

    def tracking(leaf: ConditionLeaf, context: Mapping[str, Any], previous: Mapping[str, Any] | None) -> bool:
        visited.append(leaf.field)
        return original(leaf, context, previous)

    monkeypatch.setattr(conditions, "_evaluate_leaf", tracking)
    return visited


def test_all_stops_at_first_false_leaf(monkeypatch: pytest.MonkeyPatch) -> None:
    visited = _record_visited(monkeypatch)
    condition = {
        "all": [
            {"field": "source", "op": "eq", "value": "Web"},
            {"field": "amount", "op": "gt", "value": 100},
            {"field": "region", "op": "eq", "value": "US"},
        ]
    }

    assert evaluate_conditions(condition, _record(source="Web", amount=5, region="US")) is False
    assert visited == ["source", "amount"]


def test_any_stops_at_first_true_leaf(monkeypatch: pytest.MonkeyPatch) -> None:
    visited = _record_visited(monkeypatch)
    condition = {
        "any": [
            {"field": "source", "op": "eq", "value": "Referral"},
            {"field": "amount", "op": "gt", "value": 100},
            {"field": "region", "op": "eq", "value": "US"},
        ]
    }

    assert evaluate_conditions(condition, _record(source="Web", amount=500, region="US")) is True
    assert visited == ["source", "amount"]


def test_logic_conditions_shape_and_system_fields() -> None:
    condition = {
        "logic": "OR",
        "conditions": [
            {"path": "stage", "operator": "eq", "value": "won"},
            {"path": "owner_id", "operator": "eq", "value": "owner-1"},
        ],
    }
    assert evaluate_conditions(condition, _record()) is True


def test_previous_state_operators() -> None:
    before = _record(status="new")
    after = _record(status="qualified")
    assert evaluate_conditions({"field": "status", "op": "changed"}, after, before) is True
    assert evaluate_conditions({"field": "status", "op": "changed_to", "value": "qualified"}, after, before) is True
    assert evaluate_conditions({"field": "status", "op": "changed_from", "value": "new"}, after, before) is True
    assert evaluate_conditions({"field": "status", "op": "changed"}, after) is False
    assert evaluate_conditions({"field": "status", "op": "changed"}, after, after) is False


def test_referenced_fields_lists_unique_paths() -> None:
    group = parse_condition(
        {
            "all": [
                {"field": "amount", "op": "gt", "value": 1},
                {"any": [{"field": "stage", "op": "eq", "value": "won"}, {"field": "amount", "op": "lt", "value": 9}]},
            ]
        }
    )
    assert referenced_fields(group) == ["amount", "stage"]
