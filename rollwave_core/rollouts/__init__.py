from rollwave_core.rollouts.conditions import evaluate, parse_condition
from rollwave_core.rollouts.types import (
    Action,
    Condition,
    GroupDefinition,
    GroupingSpec,
    Rollout,
    RolloutGroup,
    StatusCounts,
)

__all__ = [
    "Action",
    "Condition",
    "GroupDefinition",
    "GroupingSpec",
    "Rollout",
    "RolloutGroup",
    "StatusCounts",
    "evaluate",
    "parse_condition",
]
