from __future__ import annotations

from typing import Mapping

from rollwave_core.rollouts.types import (
    ACTION_CANCELED,
    ACTION_CANCELING,
    ACTION_DOWNLOAD,
    ACTION_ERROR,
    ACTION_FINISHED,
    ACTION_RETRIEVED,
    ACTION_RUNNING,
    ACTION_SCHEDULED,
    ACTION_WARNING,
    RolloutGroup,
    StatusCounts,
)
from rollwave_core.stores.interfaces import RolloutStore

RUNNING_BUCKET = (
    ACTION_RUNNING,
    ACTION_WARNING,
    ACTION_DOWNLOAD,
    ACTION_RETRIEVED,
    ACTION_CANCELING,
)


def summarize(by_status: Mapping[str, int], total: int) -> StatusCounts:
    running = sum(int(by_status.get(status, 0)) for status in RUNNING_BUCKET)
    scheduled = int(by_status.get(ACTION_SCHEDULED, 0))
    error = int(by_status.get(ACTION_ERROR, 0))
    finished = int(by_status.get(ACTION_FINISHED, 0))
    cancelled = int(by_status.get(ACTION_CANCELED, 0))
    assigned = running + scheduled + error + finished + cancelled
    return StatusCounts(
        total=total,
        running=running,
        scheduled=scheduled,
        error=error,
        finished=finished,
        cancelled=cancelled,
        not_started=max(total - assigned, 0),
    )


def group_counts(store: RolloutStore, group: RolloutGroup) -> StatusCounts:
    by_status = store.count_actions_by_status(group_id=group.id)
    return summarize(by_status, group.target_count)


def rollout_counts(store: RolloutStore, rollout_id: str, total: int) -> StatusCounts:
    by_status = store.count_actions_by_status(rollout_id=rollout_id)
    return summarize(by_status, total)
