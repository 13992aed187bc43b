from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Iterable

from rollwave_core.auth.policy import AccessPolicy, AllowAllPolicy
from rollwave_core.auth.rbac import (
    ACTION_ACTIONS_REPORT,
    ACTION_ROLLOUTS_CREATE,
    ACTION_ROLLOUTS_HANDLE,
    ACTION_ROLLOUTS_READ,
    ACTION_TARGETS_WRITE,
)
from rollwave_core.auth.types import AuthContext
from rollwave_core.config import Config, get_config
from rollwave_core.errors import NotFoundError, StateConflictError, ValidationError
from rollwave_core.logging import get_logger
from rollwave_core.notifications.notifier import Notifier, NullNotifier, publish_safely
from rollwave_core.notifications.types import (
    EVENT_ROLLOUT_CREATED,
    EVENT_ROLLOUT_STOPPED,
    RolloutEvent,
)
from rollwave_core.rollouts.aggregator import group_counts, rollout_counts
from rollwave_core.rollouts.assigner import AssignmentResult
from rollwave_core.rollouts.conditions import normalize_error_action
from rollwave_core.rollouts.engine import transition_rollout, trigger_next_group
from rollwave_core.rollouts.planner import GroupPlan, expand_grouping, plan_groups
from rollwave_core.rollouts.types import (
    ACTION_STATUSES,
    ACTION_TYPE_FORCED,
    ACTION_TYPE_TIMEFORCED,
    ACTION_TYPES,
    GROUP_CREATING,
    ROLLOUT_CREATING,
    ROLLOUT_PAUSED,
    ROLLOUT_READY,
    ROLLOUT_RUNNING,
    ROLLOUT_STARTING,
    ROLLOUT_STATUSES,
    ROLLOUT_TERMINAL_STATUSES,
    Action,
    ActionStatusEntry,
    Distribution,
    GroupDefinition,
    GroupingSpec,
    GroupStatusView,
    Rollout,
    RolloutGroup,
    RolloutStatusView,
    Target,
)
from rollwave_core.stores.interfaces import RolloutStore
from rollwave_core.targeting.filters import validate_filter

logger = get_logger(__name__)

STOPPABLE_STATUSES = tuple(
    status for status in ROLLOUT_STATUSES if status not in ROLLOUT_TERMINAL_STATUSES
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def normalize_timestamp(value: str | None, *, field: str) -> str | None:
    if value is None or not str(value).strip():
        return None
    raw = str(value).strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _actor(auth_context: AuthContext | None) -> str | None:
    return auth_context.actor if auth_context else None


class RolloutManagement:
    """Operator-facing entry points; each one checks the access policy first."""

    def __init__(
        self,
        store: RolloutStore,
        *,
        config: Config | None = None,
        policy: AccessPolicy | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.config = config or get_config()
        self.policy = policy or AllowAllPolicy()
        self.notifier = notifier or NullNotifier()

    # Targets and distributions

    def register_target(
        self,
        *,
        controller_id: str,
        name: str | None = None,
        attributes: dict[str, str] | None = None,
        tags: Iterable[str] | None = None,
        auth_context: AuthContext | None = None,
    ) -> Target:
        self.policy.authorize(auth_context, ACTION_TARGETS_WRITE, "targets")
        return self.store.register_target(
            controller_id=controller_id,
            name=name,
            attributes=attributes,
            tags=tags,
        )

    def list_targets(
        self,
        *,
        target_filter: str | None = None,
        limit: int | None = None,
        auth_context: AuthContext | None = None,
    ) -> list[Target]:
        self.policy.authorize(auth_context, ACTION_ROLLOUTS_READ, "targets")
        if target_filter:
            validate_filter(target_filter)
        return self.store.list_targets(target_filter=target_filter, limit=limit)

    def register_distribution(
        self,
        *,
        name: str,
        version: str,
        modules: Iterable[str] | None = None,
        auth_context: AuthContext | None = None,
    ) -> Distribution:
        self.policy.authorize(auth_context, ACTION_TARGETS_WRITE, "distributions")
        return self.store.register_distribution(
            name=name,
            version=version,
            modules=modules,
        )

    def list_distributions(
        self,
        *,
        auth_context: AuthContext | None = None,
    ) -> list[Distribution]:
        self.policy.authorize(auth_context, ACTION_ROLLOUTS_READ, "distributions")
        return self.store.list_distributions()

    # Rollout lifecycle

    def validate_groups(
        self,
        *,
        target_filter: str,
        grouping: GroupingSpec,
        created_before: str | None = None,
    ) -> GroupPlan:
        """Dry-run the partition a rollout with this grouping would get."""
        validate_filter(target_filter)
        definitions = expand_grouping(
            grouping,
            max_groups=self.config.max_groups_per_rollout,
        )
        for definition in definitions:
            if definition.target_filter:
                validate_filter(definition.target_filter)
        total_ids = self.store.list_target_ids(
            [target_filter],
            created_before=created_before,
        )
        if not total_ids:
            raise ValidationError("Rollout target filter does not match any targets")
        candidates = [
            self.store.list_target_ids(
                [target_filter, definition.target_filter],
                created_before=created_before,
            )
            for definition in definitions
        ]
        return plan_groups(
            candidates,
            [definition.target_percentage for definition in definitions],
            total_ids=total_ids,
        )

    def create_rollout(
        self,
        *,
        name: str,
        distribution_id: str,
        target_filter: str,
        grouping: GroupingSpec,
        description: str | None = None,
        action_type: str = ACTION_TYPE_FORCED,
        forced_time: str | None = None,
        start_at: str | None = None,
        auth_context: AuthContext | None = None,
    ) -> Rollout:
        self.policy.authorize(auth_context, ACTION_ROLLOUTS_CREATE, "rollouts")
        if not name or not name.strip():
            raise ValidationError("Rollout name is required")
        normalized_type = (action_type or ACTION_TYPE_FORCED).strip().lower()
        if normalized_type not in ACTION_TYPES:
            allowed = ", ".join(ACTION_TYPES)
            raise ValidationError(f"Action type must be one of: {allowed}")
        forced_at = normalize_timestamp(forced_time, field="forced_time")
        if normalized_type == ACTION_TYPE_TIMEFORCED and forced_at is None:
            raise ValidationError("Time-forced rollouts require forced_time")
        scheduled_start = normalize_timestamp(start_at, field="start_at")

        distribution = self.store.get_distribution(distribution_id)
        if distribution is None:
            raise ValidationError(f"Distribution not found: {distribution_id}")
        if not distribution.is_complete():
            raise ValidationError(
                f"Distribution {distribution.name}:{distribution.version} is incomplete"
            )

        created_at = _now()
        definitions = expand_grouping(
            grouping,
            max_groups=self.config.max_groups_per_rollout,
        )
        plan = self.validate_groups(
            target_filter=target_filter,
            grouping=grouping,
            created_before=created_at,
        )
        if plan.unassigned:
            raise ValidationError(
                f"Rollout groups cover {plan.total_targets - len(plan.unassigned)} "
                f"of {plan.total_targets} targets; the last group should take the rest"
            )
        limit = self.config.max_targets_per_group
        if limit:
            for planned in plan.groups:
                if planned.target_count > limit:
                    raise ValidationError(
                        f"Group {planned.position} would hold {planned.target_count} "
                        f"targets; the limit is {limit}"
                    )

        actor = _actor(auth_context)
        rollout = Rollout(
            id=str(uuid.uuid4()),
            name=name.strip(),
            description=description,
            distribution_id=distribution.id,
            target_filter=target_filter,
            status=ROLLOUT_CREATING,
            action_type=normalized_type,
            forced_time=forced_at,
            start_at=scheduled_start,
            total_targets=plan.total_targets,
            status_reason=None,
            created_at=created_at,
            updated_at=created_at,
            created_by=actor,
            updated_by=actor,
        )
        groups = self._build_groups(rollout, definitions, created_at)
        self.store.insert_rollout(rollout, groups)
        logger.info(
            "Rollout created",
            extra={
                "rollout_id": rollout.id,
                "rollout_status": rollout.status,
                "target_count": plan.total_targets,
            },
        )
        publish_safely(
            self.notifier,
            RolloutEvent(
                event_type=EVENT_ROLLOUT_CREATED,
                rollout_id=rollout.id,
                payload={
                    "name": rollout.name,
                    "distribution_id": rollout.distribution_id,
                    "groups": len(groups),
                    "total_targets": plan.total_targets,
                },
            ),
        )
        return rollout

    def start_rollout(
        self,
        rollout_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> Rollout:
        return self._command(
            rollout_id,
            expected=(ROLLOUT_READY,),
            status=ROLLOUT_STARTING,
            verb="start",
            auth_context=auth_context,
        )

    def pause_rollout(
        self,
        rollout_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> Rollout:
        return self._command(
            rollout_id,
            expected=(ROLLOUT_RUNNING,),
            status=ROLLOUT_PAUSED,
            verb="pause",
            auth_context=auth_context,
        )

    def resume_rollout(
        self,
        rollout_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> Rollout:
        return self._command(
            rollout_id,
            expected=(ROLLOUT_PAUSED,),
            status=ROLLOUT_RUNNING,
            verb="resume",
            auth_context=auth_context,
        )

    def stop_rollout(
        self,
        rollout_id: str,
        *,
        reason: str | None = None,
        auth_context: AuthContext | None = None,
    ) -> Rollout:
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_HANDLE, f"rollout:{rollout_id}"
        )
        rollout = self._require_rollout(rollout_id)
        canceled = self.store.stop_rollout(
            rollout_id,
            expected=STOPPABLE_STATUSES,
            updated_by=_actor(auth_context),
            reason=reason or "Stopped by operator",
        )
        if canceled is None:
            current = self._require_rollout(rollout_id)
            raise StateConflictError(
                f"Cannot stop rollout {rollout_id} in status {current.status}"
            )
        logger.info(
            "Rollout stopped",
            extra={
                "rollout_id": rollout_id,
                "previous_status": rollout.status,
                "actions_canceled": canceled,
            },
        )
        publish_safely(
            self.notifier,
            RolloutEvent(
                event_type=EVENT_ROLLOUT_STOPPED,
                rollout_id=rollout_id,
                payload={"from": rollout.status, "canceling_actions": canceled},
            ),
        )
        return self._require_rollout(rollout_id)

    def trigger_next_group(
        self,
        rollout_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> AssignmentResult | None:
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_HANDLE, f"rollout:{rollout_id}"
        )
        return trigger_next_group(
            self.store,
            rollout_id,
            config=self.config,
            notifier=self.notifier,
        )

    # Reads

    def get_rollout(
        self,
        rollout_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> Rollout:
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_READ, f"rollout:{rollout_id}"
        )
        return self._require_rollout(rollout_id)

    def list_rollouts(
        self,
        *,
        statuses: Iterable[str] | None = None,
        auth_context: AuthContext | None = None,
    ) -> list[Rollout]:
        self.policy.authorize(auth_context, ACTION_ROLLOUTS_READ, "rollouts")
        return self.store.list_rollouts(statuses)

    def list_groups(
        self,
        rollout_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> list[RolloutGroup]:
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_READ, f"rollout:{rollout_id}"
        )
        self._require_rollout(rollout_id)
        return self.store.list_groups(rollout_id)

    def get_rollout_status(
        self,
        rollout_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> RolloutStatusView:
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_READ, f"rollout:{rollout_id}"
        )
        rollout = self._require_rollout(rollout_id)
        groups = tuple(
            GroupStatusView(group=group, counts=group_counts(self.store, group))
            for group in self.store.list_groups(rollout_id)
        )
        return RolloutStatusView(
            rollout=rollout,
            counts=rollout_counts(self.store, rollout.id, rollout.total_targets),
            groups=groups,
        )

    def get_group_status(
        self,
        group_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> GroupStatusView:
        group = self.store.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Rollout group not found: {group_id}")
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_READ, f"rollout:{group.rollout_id}"
        )
        return GroupStatusView(group=group, counts=group_counts(self.store, group))

    def list_actions(
        self,
        *,
        rollout_id: str | None = None,
        group_id: str | None = None,
        target_id: str | None = None,
        active: bool | None = None,
        auth_context: AuthContext | None = None,
    ) -> list[Action]:
        self.policy.authorize(auth_context, ACTION_ROLLOUTS_READ, "actions")
        return self.store.list_actions(
            rollout_id=rollout_id,
            group_id=group_id,
            target_id=target_id,
            active=active,
        )

    def action_history(
        self,
        action_id: str,
        *,
        auth_context: AuthContext | None = None,
    ) -> list[ActionStatusEntry]:
        self.policy.authorize(auth_context, ACTION_ROLLOUTS_READ, f"action:{action_id}")
        self._require_action(action_id)
        return self.store.action_history(action_id)

    # Actions outside the scheduler

    def assign_distribution(
        self,
        *,
        target_id: str,
        distribution_id: str,
        action_type: str = ACTION_TYPE_FORCED,
        forced_time: str | None = None,
        auth_context: AuthContext | None = None,
    ) -> Action:
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_HANDLE, f"target:{target_id}"
        )
        normalized_type = (action_type or ACTION_TYPE_FORCED).strip().lower()
        if normalized_type not in ACTION_TYPES:
            allowed = ", ".join(ACTION_TYPES)
            raise ValidationError(f"Action type must be one of: {allowed}")
        distribution = self.store.get_distribution(distribution_id)
        if distribution is None:
            raise NotFoundError(f"Distribution not found: {distribution_id}")
        if not distribution.is_complete():
            raise ValidationError(
                f"Distribution {distribution.name}:{distribution.version} is incomplete"
            )
        return self.store.create_manual_action(
            target_id=target_id,
            distribution_id=distribution_id,
            action_type=normalized_type,
            forced_time=normalize_timestamp(forced_time, field="forced_time"),
        )

    def report_action_status(
        self,
        action_id: str,
        status: str,
        *,
        message: str | None = None,
        auth_context: AuthContext | None = None,
    ) -> Action:
        self.policy.authorize(
            auth_context, ACTION_ACTIONS_REPORT, f"action:{action_id}"
        )
        normalized = (status or "").strip().upper()
        if normalized not in ACTION_STATUSES:
            allowed = ", ".join(ACTION_STATUSES)
            raise ValidationError(f"Action status must be one of: {allowed}")
        updated = self.store.update_action_status(
            action_id,
            status=normalized,
            message=message,
        )
        if updated is None:
            current = self._require_action(action_id)
            raise StateConflictError(
                f"Action {action_id} does not accept {normalized} "
                f"in status {current.status}"
            )
        return updated

    # Internals

    def _command(
        self,
        rollout_id: str,
        *,
        expected: tuple[str, ...],
        status: str,
        verb: str,
        auth_context: AuthContext | None,
    ) -> Rollout:
        self.policy.authorize(
            auth_context, ACTION_ROLLOUTS_HANDLE, f"rollout:{rollout_id}"
        )
        rollout = self._require_rollout(rollout_id)
        changed = transition_rollout(
            self.store,
            rollout,
            expected=expected,
            status=status,
            notifier=self.notifier,
            updated_by=_actor(auth_context),
        )
        if not changed:
            current = self._require_rollout(rollout_id)
            raise StateConflictError(
                f"Cannot {verb} rollout {rollout_id} in status {current.status}"
            )
        return self._require_rollout(rollout_id)

    def _require_rollout(self, rollout_id: str) -> Rollout:
        rollout = self.store.get_rollout(rollout_id)
        if rollout is None:
            raise NotFoundError(f"Rollout not found: {rollout_id}")
        return rollout

    def _require_action(self, action_id: str) -> Action:
        action = self.store.get_action(action_id)
        if action is None:
            raise NotFoundError(f"Action not found: {action_id}")
        return action

    def _build_groups(
        self,
        rollout: Rollout,
        definitions: tuple[GroupDefinition, ...],
        created_at: str,
    ) -> list[RolloutGroup]:
        groups: list[RolloutGroup] = []
        parent_id: str | None = None
        for position, definition in enumerate(definitions, start=1):
            group = RolloutGroup(
                id=str(uuid.uuid4()),
                rollout_id=rollout.id,
                position=position,
                name=definition.name or f"group-{position}",
                description=definition.description,
                parent_id=parent_id,
                target_filter=definition.target_filter or None,
                target_percentage=float(definition.target_percentage),
                status=GROUP_CREATING,
                success_condition=definition.success_condition,
                error_condition=definition.error_condition,
                error_action=normalize_error_action(definition.error_action),
                target_count=0,
                error_triggered_at=None,
                created_at=created_at,
                updated_at=created_at,
            )
            groups.append(group)
            parent_id = group.id
        return groups
