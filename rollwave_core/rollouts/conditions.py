from __future__ import annotations

from rollwave_core.errors import ValidationError
from rollwave_core.rollouts.types import (
    CONDITION_COUNT,
    CONDITION_KINDS,
    CONDITION_PERCENTAGE,
    ERROR_ACTIONS,
    Condition,
)


def percent_of(numerator: int, total: int, rounding: str = "truncate") -> int:
    if total <= 0:
        return 0
    if rounding == "half_up":
        return (numerator * 200 + total) // (total * 2)
    return (numerator * 100) // total


def evaluate(
    condition: Condition | None,
    numerator: int,
    total: int,
    *,
    rounding: str = "truncate",
) -> bool:
    """Return True when ``numerator`` out of ``total`` meets the condition.

    Percentages use integer arithmetic: 5 of 10 meets 50% but not 51%.
    """
    if condition is None:
        return False
    if condition.kind == CONDITION_COUNT:
        return numerator >= condition.threshold
    if condition.kind == CONDITION_PERCENTAGE:
        if total <= 0:
            return False
        return percent_of(numerator, total, rounding) >= condition.threshold
    raise ValidationError(f"Unsupported condition kind: {condition.kind}")


def build_condition(kind: str, threshold: object) -> Condition:
    normalized = str(kind or "").strip().lower()
    if normalized not in CONDITION_KINDS:
        allowed = ", ".join(CONDITION_KINDS)
        raise ValidationError(f"Condition kind must be one of: {allowed}")
    try:
        value = int(threshold)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Condition threshold must be an integer") from exc
    if normalized == CONDITION_PERCENTAGE and not 0 <= value <= 100:
        raise ValidationError("Percentage threshold must be between 0 and 100")
    if normalized == CONDITION_COUNT and value < 0:
        raise ValidationError("Count threshold must not be negative")
    return Condition(kind=normalized, threshold=value)


def parse_condition(value: str | None) -> Condition | None:
    """Parse the ``kind:threshold`` shorthand, e.g. ``percentage:80``."""
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    if ":" not in raw:
        raise ValidationError(f"Condition must look like kind:threshold, got {raw}")
    kind, threshold = raw.split(":", 1)
    return build_condition(kind, threshold.strip())


def format_condition(condition: Condition | None) -> str | None:
    if condition is None:
        return None
    return f"{condition.kind}:{condition.threshold}"


def normalize_error_action(value: str | None) -> str:
    action = (value or "PAUSE").strip().upper()
    if action not in ERROR_ACTIONS:
        allowed = ", ".join(ERROR_ACTIONS)
        raise ValidationError(f"Error action must be one of: {allowed}")
    return action
