from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from rollwave_core.config import Config
from rollwave_core.logging import get_logger
from rollwave_core.notifications.notifier import Notifier, publish_safely
from rollwave_core.notifications.types import (
    EVENT_GROUP_ERROR_THRESHOLD,
    EVENT_GROUP_STATUS_CHANGED,
    EVENT_ROLLOUT_STATUS_CHANGED,
    RolloutEvent,
)
from rollwave_core.rollouts.aggregator import group_counts
from rollwave_core.rollouts.conditions import evaluate
from rollwave_core.rollouts.types import (
    ERROR_ACTION_PAUSE,
    GROUP_ERROR,
    GROUP_FINISHED,
    GROUP_RUNNING,
    ROLLOUT_PAUSED,
    ROLLOUT_RUNNING,
    Rollout,
    RolloutGroup,
    StatusCounts,
)
from rollwave_core.stores.interfaces import RolloutStore

logger = get_logger(__name__)

OUTCOME_NOOP = "noop"
OUTCOME_FINISHED = "finished"
OUTCOME_ERROR = "error"
OUTCOME_PAUSED = "paused"


@dataclass(frozen=True)
class GroupDecision:
    outcome: str
    counts: StatusCounts | None = None

    @property
    def advance(self) -> bool:
        return self.outcome in (OUTCOME_FINISHED, OUTCOME_ERROR)


def evaluate_group(
    store: RolloutStore,
    rollout: Rollout,
    group: RolloutGroup,
    *,
    config: Config,
    notifier: Notifier,
) -> GroupDecision:
    if group.status != GROUP_RUNNING:
        return GroupDecision(OUTCOME_NOOP)

    if group.target_count == 0:
        _finish(store, rollout, group, GROUP_FINISHED, notifier)
        return GroupDecision(OUTCOME_FINISHED, StatusCounts())

    counts = group_counts(store, group)
    rounding = config.threshold_rounding
    success_met = evaluate(
        group.success_condition,
        counts.finished,
        counts.total,
        rounding=rounding,
    )

    # A tripped PAUSE group only gets here again once the operator resumed.
    if group.error_triggered_at and group.error_action == ERROR_ACTION_PAUSE:
        status = GROUP_FINISHED if success_met else GROUP_ERROR
        _finish(store, rollout, group, status, notifier)
        outcome = OUTCOME_FINISHED if success_met else OUTCOME_ERROR
        return GroupDecision(outcome, counts)

    error_met = evaluate(
        group.error_condition,
        counts.error,
        counts.total,
        rounding=rounding,
    )
    if error_met:
        decision = _handle_error(store, rollout, group, counts, config, notifier)
        if decision is not None:
            return decision

    if success_met:
        _finish(store, rollout, group, GROUP_FINISHED, notifier)
        return GroupDecision(OUTCOME_FINISHED, counts)
    return GroupDecision(OUTCOME_NOOP, counts)


def _handle_error(
    store: RolloutStore,
    rollout: Rollout,
    group: RolloutGroup,
    counts: StatusCounts,
    config: Config,
    notifier: Notifier,
) -> GroupDecision | None:
    triggered_at = datetime.now(timezone.utc).isoformat(timespec="microseconds")
    condition = group.error_condition.describe() if group.error_condition else ""
    if group.error_action == ERROR_ACTION_PAUSE:
        reason = f"Group {group.name} reached error threshold {condition}"
        if not store.pause_for_group_error(
            rollout.id,
            group.id,
            triggered_at=triggered_at,
            reason=reason,
        ):
            return GroupDecision(OUTCOME_NOOP, counts)
        logger.warning(
            "Rollout paused on group error threshold",
            extra={
                "rollout_id": rollout.id,
                "group_id": group.id,
                "failed": counts.error,
                "target_count": counts.total,
            },
        )
        _publish_error(rollout, group, counts, notifier, action="pause")
        publish_safely(
            notifier,
            RolloutEvent(
                event_type=EVENT_ROLLOUT_STATUS_CHANGED,
                rollout_id=rollout.id,
                payload={
                    "from": ROLLOUT_RUNNING,
                    "to": ROLLOUT_PAUSED,
                    "reason": reason,
                },
            ),
        )
        return GroupDecision(OUTCOME_PAUSED, counts)

    if config.error_action_none_mode == "halt":
        _finish(store, rollout, group, GROUP_ERROR, notifier)
        return GroupDecision(OUTCOME_ERROR, counts)

    if store.mark_group_error_triggered(group.id, triggered_at=triggered_at):
        logger.warning(
            "Group error threshold reached",
            extra={
                "rollout_id": rollout.id,
                "group_id": group.id,
                "failed": counts.error,
                "target_count": counts.total,
            },
        )
        _publish_error(rollout, group, counts, notifier, action="none")
    return None


def _finish(
    store: RolloutStore,
    rollout: Rollout,
    group: RolloutGroup,
    status: str,
    notifier: Notifier,
) -> bool:
    changed = store.update_group_status(
        group.id,
        expected=(GROUP_RUNNING,),
        status=status,
    )
    if not changed:
        return False
    logger.info(
        "Group status changed",
        extra={
            "rollout_id": rollout.id,
            "group_id": group.id,
            "previous_status": GROUP_RUNNING,
            "group_status": status,
        },
    )
    publish_safely(
        notifier,
        RolloutEvent(
            event_type=EVENT_GROUP_STATUS_CHANGED,
            rollout_id=rollout.id,
            group_id=group.id,
            payload={"from": GROUP_RUNNING, "to": status},
        ),
    )
    return True


def _publish_error(
    rollout: Rollout,
    group: RolloutGroup,
    counts: StatusCounts,
    notifier: Notifier,
    *,
    action: str,
) -> None:
    publish_safely(
        notifier,
        RolloutEvent(
            event_type=EVENT_GROUP_ERROR_THRESHOLD,
            rollout_id=rollout.id,
            group_id=group.id,
            payload={
                "error_action": action,
                "counts": counts.to_dict(),
            },
        ),
    )
