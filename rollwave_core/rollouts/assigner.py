from __future__ import annotations

import time
from dataclasses import dataclass

from rollwave_core.errors import StateConflictError
from rollwave_core.logging import get_logger
from rollwave_core.notifications.notifier import Notifier, NullNotifier, publish_safely
from rollwave_core.notifications.types import (
    EVENT_ACTIONS_ASSIGNED,
    EVENT_GROUP_STATUS_CHANGED,
    RolloutEvent,
)
from rollwave_core.rollouts.types import (
    GROUP_RUNNING,
    GROUP_SCHEDULED,
    ROLLOUT_RUNNING,
    ROLLOUT_STARTING,
    Rollout,
    RolloutGroup,
)
from rollwave_core.stores.interfaces import RolloutStore

logger = get_logger(__name__)

ASSIGNABLE_ROLLOUT_STATUSES = (ROLLOUT_STARTING, ROLLOUT_RUNNING)


@dataclass(frozen=True)
class AssignmentResult:
    group_id: str
    created: int
    canceled: int
    batches: int
    started: bool
    aborted: bool = False


def assign_group(
    store: RolloutStore,
    rollout: Rollout,
    group: RolloutGroup,
    *,
    batch_size: int,
    notifier: Notifier | None = None,
) -> AssignmentResult:
    """Create the group's actions and move it SCHEDULED -> RUNNING.

    Each batch is its own store transaction and only covers members that do
    not yet have an action for this group, so re-running after a crash picks
    up where the previous attempt stopped.
    """
    if group.status not in (GROUP_SCHEDULED, GROUP_RUNNING):
        raise StateConflictError(
            f"Group {group.id} cannot be started from status {group.status}"
        )
    notifier = notifier or NullNotifier()
    started_at = time.monotonic()
    created = 0
    canceled = 0
    batches = 0
    while True:
        batch = store.create_group_actions(
            rollout_id=rollout.id,
            group_id=group.id,
            distribution_id=rollout.distribution_id,
            action_type=rollout.action_type,
            forced_time=rollout.forced_time,
            limit=batch_size,
            allowed_rollout_statuses=ASSIGNABLE_ROLLOUT_STATUSES,
        )
        if batch.aborted:
            logger.info(
                "Action assignment aborted",
                extra={"rollout_id": rollout.id, "group_id": group.id},
            )
            return AssignmentResult(
                group_id=group.id,
                created=created,
                canceled=canceled,
                batches=batches,
                started=False,
                aborted=True,
            )
        if batch.created:
            batches += 1
        created += batch.created
        canceled += batch.canceled
        if batch.created < batch_size:
            break

    started = group.status == GROUP_RUNNING or store.update_group_status(
        group.id,
        expected=(GROUP_SCHEDULED,),
        status=GROUP_RUNNING,
    )
    duration_ms = int((time.monotonic() - started_at) * 1000)
    logger.info(
        "Group actions assigned",
        extra={
            "rollout_id": rollout.id,
            "group_id": group.id,
            "actions_created": created,
            "actions_canceled": canceled,
            "duration_ms": duration_ms,
        },
    )
    if created:
        publish_safely(
            notifier,
            RolloutEvent(
                event_type=EVENT_ACTIONS_ASSIGNED,
                rollout_id=rollout.id,
                group_id=group.id,
                payload={"created": created, "superseded": canceled},
            ),
        )
    if started and group.status != GROUP_RUNNING:
        publish_safely(
            notifier,
            RolloutEvent(
                event_type=EVENT_GROUP_STATUS_CHANGED,
                rollout_id=rollout.id,
                group_id=group.id,
                payload={"from": GROUP_SCHEDULED, "to": GROUP_RUNNING},
            ),
        )
    return AssignmentResult(
        group_id=group.id,
        created=created,
        canceled=canceled,
        batches=batches,
        started=started,
    )
