from __future__ import annotations

from typing import Iterable, Protocol, Sequence

from rollwave_core.rollouts.types import (
    Action,
    ActionStatusEntry,
    AssignBatch,
    Distribution,
    Rollout,
    RolloutGroup,
    Target,
)


class TargetStore(Protocol):
    def register_target(
        self,
        *,
        controller_id: str,
        name: str | None = None,
        attributes: dict[str, str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> Target:
        ...

    def get_target(self, target_id: str) -> Target | None:
        ...

    def list_targets(
        self,
        *,
        target_filter: str | None = None,
        limit: int | None = None,
    ) -> list[Target]:
        ...

    def count_targets(
        self,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
    ) -> int:
        ...

    def list_target_ids(
        self,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
    ) -> list[str]:
        ...


class DistributionStore(Protocol):
    def register_distribution(
        self,
        *,
        name: str,
        version: str,
        modules: Iterable[str] | None = None,
    ) -> Distribution:
        ...

    def get_distribution(self, distribution_id: str) -> Distribution | None:
        ...

    def list_distributions(self) -> list[Distribution]:
        ...


class RolloutStore(TargetStore, DistributionStore, Protocol):
    """Persistence contract for the rollout engine.

    Every status mutation is a compare-and-set on the expected source status
    and returns False when another actor already moved the entity. Bulk action
    transitions run as a single conditional UPDATE inside one write
    transaction, so a device report racing a bulk switch either lands before
    it or finds the action no longer matching and is rejected.
    """

    def insert_rollout(self, rollout: Rollout, groups: Sequence[RolloutGroup]) -> None:
        ...

    def get_rollout(self, rollout_id: str) -> Rollout | None:
        ...

    def list_rollouts(self, statuses: Iterable[str] | None = None) -> list[Rollout]:
        ...

    def update_rollout_status(
        self,
        rollout_id: str,
        *,
        expected: Iterable[str],
        status: str,
        reason: str | None = None,
        updated_by: str | None = None,
        total_targets: int | None = None,
    ) -> bool:
        ...

    def stop_rollout(
        self,
        rollout_id: str,
        *,
        expected: Iterable[str],
        updated_by: str | None = None,
        reason: str | None = None,
    ) -> int | None:
        ...

    def list_groups(self, rollout_id: str) -> list[RolloutGroup]:
        ...

    def get_group(self, group_id: str) -> RolloutGroup | None:
        ...

    def update_group_status(
        self,
        group_id: str,
        *,
        expected: Iterable[str],
        status: str,
        target_count: int | None = None,
    ) -> bool:
        ...

    def mark_group_error_triggered(self, group_id: str, *, triggered_at: str) -> bool:
        ...

    def pause_for_group_error(
        self,
        rollout_id: str,
        group_id: str,
        *,
        triggered_at: str,
        reason: str,
    ) -> bool:
        ...

    def count_group_candidates(
        self,
        rollout_id: str,
        group_id: str,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
    ) -> int:
        ...

    def assign_targets_to_group(
        self,
        rollout_id: str,
        group_id: str,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
        limit: int,
    ) -> int:
        ...

    def count_group_targets(self, group_id: str) -> int:
        ...

    def count_rollout_targets(self, rollout_id: str) -> int:
        ...

    def list_group_target_ids(self, group_id: str) -> list[str]:
        ...

    def create_group_actions(
        self,
        *,
        rollout_id: str,
        group_id: str,
        distribution_id: str,
        action_type: str,
        forced_time: str | None,
        limit: int,
        allowed_rollout_statuses: Iterable[str],
    ) -> AssignBatch:
        ...

    def create_manual_action(
        self,
        *,
        target_id: str,
        distribution_id: str,
        action_type: str,
        forced_time: str | None = None,
    ) -> Action:
        ...

    def get_action(self, action_id: str) -> Action | None:
        ...

    def list_actions(
        self,
        *,
        rollout_id: str | None = None,
        group_id: str | None = None,
        target_id: str | None = None,
        active: bool | None = None,
    ) -> list[Action]:
        ...

    def update_action_status(
        self,
        action_id: str,
        *,
        status: str,
        message: str | None = None,
    ) -> Action | None:
        ...

    def transition_actions(
        self,
        *,
        rollout_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        group_id: str | None = None,
        message: str | None = None,
    ) -> int:
        ...

    def action_history(self, action_id: str) -> list[ActionStatusEntry]:
        ...

    def count_actions_by_status(
        self,
        *,
        rollout_id: str | None = None,
        group_id: str | None = None,
    ) -> dict[str, int]:
        ...

    def acquire_lock(self, name: str, *, owner: str, ttl_seconds: int) -> bool:
        ...

    def renew_lock(self, name: str, *, owner: str, ttl_seconds: int) -> bool:
        ...

    def release_lock(self, name: str, *, owner: str) -> None:
        ...
