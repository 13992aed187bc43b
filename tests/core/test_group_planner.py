from __future__ import annotations

import pytest

from rollwave_core.errors import ValidationError
from rollwave_core.rollouts.planner import (
    equal_group_percentages,
    expand_grouping,
    group_size,
    plan_groups,
)
from rollwave_core.rollouts.types import Condition, GroupDefinition, GroupingSpec


@pytest.mark.core
def test_group_size_rounds_half_up():
    assert group_size(10, 25) == 3
    assert group_size(10, 24) == 2
    assert group_size(0, 50) == 0
    assert group_size(7, 100) == 7


@pytest.mark.core
def test_equal_groups_cover_all_targets():
    ids = [f"t{idx:02d}" for idx in range(10)]
    percentages = equal_group_percentages(3)
    assert percentages[-1] == 100.0
    plan = plan_groups([ids] * 3, percentages, total_ids=ids)
    assert [group.target_count for group in plan.groups] == [3, 4, 3]
    assert plan.unassigned == ()
    seen = [item for group in plan.groups for item in group.target_ids]
    assert sorted(seen) == ids


@pytest.mark.core
def test_plan_reports_unassigned_targets():
    ids = [f"t{idx}" for idx in range(4)]
    plan = plan_groups([ids, ids], [25, 50], total_ids=ids)
    assert plan.total_targets == 4
    assert len(plan.unassigned) == 1


@pytest.mark.core
def test_plan_respects_group_filters():
    everyone = ["a", "b", "c", "d"]
    plan = plan_groups([["a", "b"], everyone], [100, 100], total_ids=everyone)
    assert plan.groups[0].target_ids == ("a", "b")
    assert plan.groups[1].target_ids == ("c", "d")


@pytest.mark.core
def test_expand_grouping_amount():
    definitions = expand_grouping(GroupingSpec(amount=4), max_groups=10)
    assert [round(item.target_percentage, 2) for item in definitions] == [
        25.0,
        33.33,
        50.0,
        100.0,
    ]
    assert definitions[0].name == "group-1"


@pytest.mark.core
@pytest.mark.parametrize(
    "grouping",
    [
        GroupingSpec(),
        GroupingSpec(amount=0),
        GroupingSpec(amount=11),
        GroupingSpec(groups=(GroupDefinition(target_percentage=0),)),
        GroupingSpec(groups=(GroupDefinition(target_percentage=120),)),
        GroupingSpec(amount=2, groups=(GroupDefinition(),)),
        GroupingSpec(amount=2, error_condition=Condition(kind="count", threshold=0)),
        GroupingSpec(
            groups=(
                GroupDefinition(
                    error_condition=Condition(kind="percentage", threshold=0)
                ),
            )
        ),
    ],
)
def test_expand_grouping_rejects_invalid(grouping):
    with pytest.raises(ValidationError):
        expand_grouping(grouping, max_groups=10)
