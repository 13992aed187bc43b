from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from rollwave_core.errors import ValidationError
from rollwave_core.rollouts.types import GroupDefinition, GroupingSpec


@dataclass(frozen=True)
class PlannedGroup:
    position: int
    percent: float
    candidates: int
    target_ids: tuple[str, ...]

    @property
    def target_count(self) -> int:
        return len(self.target_ids)


@dataclass(frozen=True)
class GroupPlan:
    total_targets: int
    groups: tuple[PlannedGroup, ...]
    unassigned: tuple[str, ...]


def group_size(candidates: int, percent: float) -> int:
    """Share of ``candidates`` taken by a group, rounded half up."""
    if candidates <= 0:
        return 0
    size = int(math.floor(percent * candidates / 100.0 + 0.5))
    return max(0, min(size, candidates))


def equal_group_percentages(amount: int) -> tuple[float, ...]:
    """Each group takes an equal share of what the earlier groups left."""
    return tuple(100.0 / (amount - idx) for idx in range(amount))


def expand_grouping(
    grouping: GroupingSpec,
    *,
    max_groups: int,
) -> tuple[GroupDefinition, ...]:
    if grouping.groups and grouping.amount is not None:
        raise ValidationError("Use either a group amount or explicit groups, not both")
    if grouping.groups:
        definitions = tuple(grouping.groups)
    elif grouping.amount is not None:
        amount = int(grouping.amount)
        if amount < 1 or amount > max_groups:
            raise ValidationError(f"Group amount must be between 1 and {max_groups}")
        definitions = tuple(
            GroupDefinition(
                name=f"group-{idx}",
                target_percentage=percent,
                success_condition=grouping.success_condition,
                error_condition=grouping.error_condition,
                error_action=grouping.error_action,
            )
            for idx, percent in enumerate(equal_group_percentages(amount), start=1)
        )
    else:
        raise ValidationError("Rollout requires a group amount or explicit groups")

    if len(definitions) > max_groups:
        raise ValidationError(f"A rollout supports at most {max_groups} groups")
    for definition in definitions:
        percent = definition.target_percentage
        if percent is None or not 0 < float(percent) <= 100:
            raise ValidationError(
                "Group target percentage must be above 0 and at most 100"
            )
        error = definition.error_condition
        if error is not None and error.threshold < 1:
            raise ValidationError("Error condition threshold must be at least 1")
    return definitions


def plan_groups(
    candidates: Sequence[Sequence[str]],
    percentages: Sequence[float],
    *,
    total_ids: Sequence[str] | None = None,
) -> GroupPlan:
    """Partition target ids across groups in order.

    ``candidates[i]`` holds the ids matching group ``i``'s filter. A group takes
    its percentage of the candidates no earlier group already took, lowest ids
    first, so replaying the plan always yields the same partition.
    """
    if len(candidates) != len(percentages):
        raise ValueError("candidates and percentages must have the same length")
    assigned: set[str] = set()
    groups: list[PlannedGroup] = []
    for idx, (group_ids, percent) in enumerate(zip(candidates, percentages), start=1):
        available = sorted(item for item in set(group_ids) if item not in assigned)
        size = group_size(len(available), float(percent))
        chosen = tuple(available[:size])
        assigned.update(chosen)
        groups.append(
            PlannedGroup(
                position=idx,
                percent=float(percent),
                candidates=len(available),
                target_ids=chosen,
            )
        )

    universe = sorted(set(total_ids)) if total_ids is not None else sorted(assigned)
    unassigned = tuple(item for item in universe if item not in assigned)
    return GroupPlan(
        total_targets=len(universe),
        groups=tuple(groups),
        unassigned=unassigned,
    )
