"""Rollout transition engine.

Each call to :func:`process_rollout` re-reads the persisted state and performs
at most the work needed to move the rollout one step forward. Every status
change is a compare-and-set on the source status, so repeating a step after a
crash or racing an operator command is always safe.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from rollwave_core.config import Config
from rollwave_core.errors import (
    NotFoundError,
    PermanentError,
    StateConflictError,
    ValidationError,
)
from rollwave_core.logging import get_logger
from rollwave_core.notifications.notifier import Notifier, NullNotifier, publish_safely
from rollwave_core.notifications.types import (
    EVENT_GROUP_STATUS_CHANGED,
    EVENT_ROLLOUT_STATUS_CHANGED,
    RolloutEvent,
)
from rollwave_core.rollouts.assigner import AssignmentResult, assign_group
from rollwave_core.rollouts.groups import OUTCOME_PAUSED, evaluate_group
from rollwave_core.rollouts.planner import group_size
from rollwave_core.rollouts.types import (
    GROUP_CREATING,
    GROUP_FINISHED,
    GROUP_RUNNING,
    GROUP_SCHEDULED,
    ROLLOUT_CREATING,
    ROLLOUT_ERROR_CREATING,
    ROLLOUT_ERROR_STARTING,
    ROLLOUT_FINISHED,
    ROLLOUT_PAUSED,
    ROLLOUT_READY,
    ROLLOUT_RUNNING,
    ROLLOUT_STARTING,
    Rollout,
    RolloutGroup,
)
from rollwave_core.stores.interfaces import RolloutStore

logger = get_logger(__name__)

ENGINE_ACTOR = "rollwave-engine"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def transition_rollout(
    store: RolloutStore,
    rollout: Rollout,
    *,
    expected: Iterable[str],
    status: str,
    notifier: Notifier,
    reason: str | None = None,
    updated_by: str | None = None,
    total_targets: int | None = None,
) -> bool:
    changed = store.update_rollout_status(
        rollout.id,
        expected=tuple(expected),
        status=status,
        reason=reason,
        updated_by=updated_by,
        total_targets=total_targets,
    )
    if not changed:
        return False
    logger.info(
        "Rollout status changed",
        extra={
            "rollout_id": rollout.id,
            "previous_status": rollout.status,
            "rollout_status": status,
        },
    )
    payload: dict[str, object] = {"from": rollout.status, "to": status}
    if reason:
        payload["reason"] = reason
    publish_safely(
        notifier,
        RolloutEvent(
            event_type=EVENT_ROLLOUT_STATUS_CHANGED,
            rollout_id=rollout.id,
            payload=payload,
        ),
    )
    return True


def process_rollout(
    store: RolloutStore,
    rollout_id: str,
    *,
    config: Config,
    notifier: Notifier | None = None,
) -> str:
    """Advance one rollout by a single level-triggered step."""
    notifier = notifier or NullNotifier()
    rollout = store.get_rollout(rollout_id)
    if rollout is None:
        raise NotFoundError(f"Rollout not found: {rollout_id}")

    if rollout.status == ROLLOUT_CREATING:
        _handle_creating(store, rollout, config, notifier)
    elif rollout.status == ROLLOUT_READY:
        _handle_ready(store, rollout, config, notifier)
    elif rollout.status == ROLLOUT_STARTING:
        _handle_starting(store, rollout, config, notifier)
    elif rollout.status == ROLLOUT_RUNNING:
        _handle_running(store, rollout, config, notifier)

    latest = store.get_rollout(rollout_id)
    return latest.status if latest else rollout.status


def mark_failed(
    store: RolloutStore,
    rollout_id: str,
    error: Exception,
    *,
    notifier: Notifier | None = None,
) -> str | None:
    """Move a rollout that failed deterministically out of the active set."""
    notifier = notifier or NullNotifier()
    rollout = store.get_rollout(rollout_id)
    if rollout is None:
        return None
    if rollout.status == ROLLOUT_CREATING:
        status = ROLLOUT_ERROR_CREATING
    elif rollout.status == ROLLOUT_STARTING:
        status = ROLLOUT_ERROR_STARTING
    elif rollout.status in (ROLLOUT_READY, ROLLOUT_RUNNING):
        status = ROLLOUT_PAUSED
    else:
        return rollout.status
    transition_rollout(
        store,
        rollout,
        expected=(rollout.status,),
        status=status,
        notifier=notifier,
        reason=str(error),
        updated_by=ENGINE_ACTOR,
    )
    return status


def start_next_group(
    store: RolloutStore,
    rollout: Rollout,
    *,
    config: Config,
    notifier: Notifier,
) -> AssignmentResult | None:
    """Start the first SCHEDULED group; empty groups finish on the way."""
    for group in store.list_groups(rollout.id):
        if group.status in (GROUP_RUNNING, GROUP_CREATING):
            return None
        if group.status != GROUP_SCHEDULED:
            continue
        if group.target_count == 0:
            _finish_empty_group(store, rollout, group, notifier)
            continue
        return assign_group(
            store,
            rollout,
            group,
            batch_size=config.assign_batch_size,
            notifier=notifier,
        )
    return None


def trigger_next_group(
    store: RolloutStore,
    rollout_id: str,
    *,
    config: Config,
    notifier: Notifier | None = None,
) -> AssignmentResult | None:
    """Finish the running group early and start its successor."""
    notifier = notifier or NullNotifier()
    rollout = store.get_rollout(rollout_id)
    if rollout is None:
        raise NotFoundError(f"Rollout not found: {rollout_id}")
    if rollout.status != ROLLOUT_RUNNING:
        raise StateConflictError(
            f"Rollout {rollout_id} must be RUNNING to trigger the next group"
        )
    groups = store.list_groups(rollout.id)
    if not any(group.status == GROUP_SCHEDULED for group in groups):
        raise StateConflictError(f"Rollout {rollout_id} has no scheduled group left")
    for group in groups:
        if group.status != GROUP_RUNNING:
            continue
        if store.update_group_status(
            group.id,
            expected=(GROUP_RUNNING,),
            status=GROUP_FINISHED,
        ):
            _publish_group_change(notifier, rollout, group, GROUP_FINISHED)
    return start_next_group(store, rollout, config=config, notifier=notifier)


def _handle_creating(
    store: RolloutStore,
    rollout: Rollout,
    config: Config,
    notifier: Notifier,
) -> None:
    try:
        total = store.count_targets(
            [rollout.target_filter],
            created_before=rollout.created_at,
        )
    except ValidationError as exc:
        raise PermanentError(f"Invalid target filter: {exc}") from exc
    if total == 0:
        transition_rollout(
            store,
            rollout,
            expected=(ROLLOUT_CREATING,),
            status=ROLLOUT_ERROR_CREATING,
            notifier=notifier,
            reason="Target filter matches no targets",
            updated_by=ENGINE_ACTOR,
        )
        return

    for group in store.list_groups(rollout.id):
        if group.status != GROUP_CREATING:
            continue
        current = store.get_rollout(rollout.id)
        if current is None or current.status != ROLLOUT_CREATING:
            return
        try:
            _fill_group(store, rollout, group, config)
        except ValidationError as exc:
            message = f"Invalid filter for group {group.name}: {exc}"
            raise PermanentError(message) from exc

    assigned = store.count_rollout_targets(rollout.id)
    transition_rollout(
        store,
        rollout,
        expected=(ROLLOUT_CREATING,),
        status=ROLLOUT_READY,
        notifier=notifier,
        updated_by=ENGINE_ACTOR,
        total_targets=assigned,
    )


def _fill_group(
    store: RolloutStore,
    rollout: Rollout,
    group: RolloutGroup,
    config: Config,
) -> None:
    filters = [rollout.target_filter, group.target_filter]
    candidates = store.count_group_candidates(
        rollout.id,
        group.id,
        filters,
        created_before=rollout.created_at,
    )
    expected = group_size(candidates, group.target_percentage)
    current = store.count_group_targets(group.id)
    while current < expected:
        inserted = store.assign_targets_to_group(
            rollout.id,
            group.id,
            filters,
            created_before=rollout.created_at,
            limit=min(config.assign_batch_size, expected - current),
        )
        if inserted == 0:
            break
        current += inserted
    store.update_group_status(
        group.id,
        expected=(GROUP_CREATING,),
        status=GROUP_SCHEDULED,
        target_count=current,
    )
    logger.info(
        "Group filled",
        extra={
            "rollout_id": rollout.id,
            "group_id": group.id,
            "target_count": current,
        },
    )


def _handle_ready(
    store: RolloutStore,
    rollout: Rollout,
    config: Config,
    notifier: Notifier,
) -> None:
    if not rollout.start_at or rollout.start_at > _now():
        return
    started = transition_rollout(
        store,
        rollout,
        expected=(ROLLOUT_READY,),
        status=ROLLOUT_STARTING,
        notifier=notifier,
        reason="Scheduled start time reached",
        updated_by=ENGINE_ACTOR,
    )
    if not started:
        return
    refreshed = store.get_rollout(rollout.id)
    if refreshed is not None and refreshed.status == ROLLOUT_STARTING:
        _handle_starting(store, refreshed, config, notifier)


def _handle_starting(
    store: RolloutStore,
    rollout: Rollout,
    config: Config,
    notifier: Notifier,
) -> None:
    distribution = store.get_distribution(rollout.distribution_id)
    if distribution is None:
        raise PermanentError(f"Distribution not found: {rollout.distribution_id}")
    if not distribution.is_complete():
        raise PermanentError(
            f"Distribution {distribution.name}:{distribution.version} has no modules"
        )
    result = start_next_group(store, rollout, config=config, notifier=notifier)
    if result is not None and result.aborted:
        return
    transition_rollout(
        store,
        rollout,
        expected=(ROLLOUT_STARTING,),
        status=ROLLOUT_RUNNING,
        notifier=notifier,
        updated_by=ENGINE_ACTOR,
    )


def _handle_running(
    store: RolloutStore,
    rollout: Rollout,
    config: Config,
    notifier: Notifier,
) -> None:
    for group in store.list_groups(rollout.id):
        if group.status != GROUP_RUNNING:
            continue
        decision = evaluate_group(
            store,
            rollout,
            group,
            config=config,
            notifier=notifier,
        )
        if decision.outcome == OUTCOME_PAUSED:
            return

    groups = store.list_groups(rollout.id)
    if any(group.status == GROUP_RUNNING for group in groups):
        return
    current = store.get_rollout(rollout.id)
    if current is None or current.status != ROLLOUT_RUNNING:
        return
    if any(group.status == GROUP_SCHEDULED for group in groups):
        result = start_next_group(store, current, config=config, notifier=notifier)
        if result is not None:
            return
        groups = store.list_groups(rollout.id)

    pending = (GROUP_CREATING, GROUP_SCHEDULED, GROUP_RUNNING)
    if not any(group.status in pending for group in groups):
        transition_rollout(
            store,
            current,
            expected=(ROLLOUT_RUNNING,),
            status=ROLLOUT_FINISHED,
            notifier=notifier,
            updated_by=ENGINE_ACTOR,
        )


def _finish_empty_group(
    store: RolloutStore,
    rollout: Rollout,
    group: RolloutGroup,
    notifier: Notifier,
) -> None:
    if store.update_group_status(
        group.id,
        expected=(GROUP_SCHEDULED,),
        status=GROUP_FINISHED,
    ):
        logger.info(
            "Empty group finished",
            extra={"rollout_id": rollout.id, "group_id": group.id},
        )
        _publish_group_change(notifier, rollout, group, GROUP_FINISHED)


def _publish_group_change(
    notifier: Notifier,
    rollout: Rollout,
    group: RolloutGroup,
    status: str,
) -> None:
    publish_safely(
        notifier,
        RolloutEvent(
            event_type=EVENT_GROUP_STATUS_CHANGED,
            rollout_id=rollout.id,
            group_id=group.id,
            payload={"from": group.status, "to": status},
        ),
    )
