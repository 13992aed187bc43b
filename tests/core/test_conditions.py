from __future__ import annotations

import pytest

from rollwave_core.errors import ValidationError
from rollwave_core.rollouts.conditions import (
    build_condition,
    evaluate,
    format_condition,
    normalize_error_action,
    parse_condition,
    percent_of,
)
from rollwave_core.rollouts.types import Condition


@pytest.mark.core
def test_percentage_threshold_uses_integer_arithmetic():
    condition = Condition(kind="percentage", threshold=50)
    assert evaluate(condition, 5, 10)
    assert not evaluate(Condition(kind="percentage", threshold=51), 5, 10)
    assert not evaluate(condition, 4, 10)


@pytest.mark.core
def test_percentage_truncates_unless_half_up():
    assert percent_of(2, 3) == 66
    assert percent_of(2, 3, rounding="half_up") == 67
    condition = Condition(kind="percentage", threshold=67)
    assert not evaluate(condition, 2, 3)
    assert evaluate(condition, 2, 3, rounding="half_up")


@pytest.mark.core
def test_count_threshold_ignores_total():
    condition = Condition(kind="count", threshold=3)
    assert evaluate(condition, 3, 1000)
    assert not evaluate(condition, 2, 3)


@pytest.mark.core
def test_missing_condition_or_empty_group_never_triggers():
    assert not evaluate(None, 10, 10)
    assert not evaluate(Condition(kind="percentage", threshold=0), 0, 0)


@pytest.mark.core
def test_parse_condition_shorthand():
    condition = parse_condition("percentage:80")
    assert condition == Condition(kind="percentage", threshold=80)
    assert format_condition(condition) == "percentage:80"
    assert parse_condition(" ") is None


@pytest.mark.core
@pytest.mark.parametrize(
    "kind,threshold",
    [
        ("percentage", 101),
        ("percentage", -1),
        ("count", -2),
        ("ratio", 5),
        ("count", "x"),
    ],
)
def test_build_condition_rejects_bad_input(kind, threshold):
    with pytest.raises(ValidationError):
        build_condition(kind, threshold)


@pytest.mark.core
def test_error_action_is_normalized():
    assert normalize_error_action(None) == "PAUSE"
    assert normalize_error_action("none") == "NONE"
    with pytest.raises(ValidationError):
        normalize_error_action("rollback")
