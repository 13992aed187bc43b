from __future__ import annotations

from dataclasses import replace

import pytest

from rollwave_core.errors import NotFoundError, StateConflictError, ValidationError
from rollwave_core.rollouts.conditions import parse_condition
from rollwave_core.rollouts.engine import process_rollout
from rollwave_core.rollouts.management import RolloutManagement, normalize_timestamp
from rollwave_core.rollouts.types import GroupDefinition, GroupingSpec


def _create(management, distribution, **kwargs):
    params = {
        "name": "firmware 2.4",
        "distribution_id": distribution.id,
        "target_filter": "tag==fleet",
        "grouping": GroupingSpec(amount=2),
    }
    params.update(kwargs)
    return management.create_rollout(**params)


@pytest.mark.core
def test_create_rollout_persists_groups(
    management, store, notifier, distribution, register_targets
):
    register_targets(6, tags=["fleet"])
    rollout = _create(management, distribution, description="stage one")

    assert rollout.status == "CREATING"
    assert rollout.total_targets == 6
    assert store.get_rollout(rollout.id) == rollout
    groups = store.list_groups(rollout.id)
    assert [group.name for group in groups] == ["group-1", "group-2"]
    assert [group.status for group in groups] == ["CREATING", "CREATING"]
    assert groups[0].success_condition.threshold == 100
    assert groups[0].error_action == "PAUSE"
    assert notifier.event_types() == ["rollout.created"]


@pytest.mark.core
def test_create_rollout_rejects_uncovered_targets(
    management, distribution, register_targets
):
    register_targets(4, tags=["fleet"])
    grouping = GroupingSpec(groups=(GroupDefinition(target_percentage=50),))
    with pytest.raises(ValidationError, match="cover 2 of 4"):
        _create(management, distribution, grouping=grouping)


@pytest.mark.core
def test_create_rollout_validation_errors(
    management, store, distribution, register_targets
):
    register_targets(2, tags=["fleet"])
    incomplete = store.register_distribution(name="empty", version="0.1")

    with pytest.raises(ValidationError, match="incomplete"):
        _create(management, incomplete)
    with pytest.raises(ValidationError, match="not found"):
        management.create_rollout(
            name="x",
            distribution_id="missing",
            target_filter="tag==fleet",
            grouping=GroupingSpec(amount=1),
        )
    with pytest.raises(ValidationError, match="does not match"):
        _create(management, distribution, target_filter="tag==nobody")
    with pytest.raises(ValidationError):
        _create(management, distribution, target_filter="tag=~fleet")
    with pytest.raises(ValidationError):
        _create(management, distribution, action_type="eventually")
    with pytest.raises(ValidationError, match="forced_time"):
        _create(management, distribution, action_type="timeforced")
    with pytest.raises(ValidationError):
        _create(management, distribution, start_at="tomorrow")
    with pytest.raises(ValidationError):
        _create(management, distribution, name=" ")
    assert store.list_rollouts() == []


@pytest.mark.core
def test_create_rollout_enforces_group_limits(
    store, config, distribution, register_targets
):
    register_targets(10, tags=["fleet"])
    limited = RolloutManagement(
        store,
        config=replace(config, max_targets_per_group=3, max_groups_per_rollout=4),
    )
    with pytest.raises(ValidationError, match="limit is 3"):
        _create(limited, distribution)
    with pytest.raises(ValidationError):
        _create(limited, distribution, grouping=GroupingSpec(amount=5))


@pytest.mark.core
@pytest.mark.parametrize("shorthand", ["count:0", "percentage:0"])
def test_create_rollout_rejects_zero_error_threshold(
    management, store, distribution, register_targets, shorthand
):
    register_targets(4, tags=["fleet"])
    grouping = GroupingSpec(amount=2, error_condition=parse_condition(shorthand))

    with pytest.raises(ValidationError, match="at least 1"):
        _create(management, distribution, grouping=grouping)
    assert store.list_rollouts() == []

    accepted = _create(
        management,
        distribution,
        grouping=GroupingSpec(amount=2, error_condition=parse_condition("count:1")),
    )
    assert store.list_groups(accepted.id)[0].error_condition.threshold == 1


@pytest.mark.core
def test_start_at_is_normalized_to_utc():
    assert normalize_timestamp("2030-01-01T02:00:00+02:00", field="start_at") == (
        "2030-01-01T00:00:00.000000+00:00"
    )
    assert normalize_timestamp("2030-01-01T00:00:00Z", field="start_at") == (
        "2030-01-01T00:00:00.000000+00:00"
    )
    assert normalize_timestamp(None, field="start_at") is None


@pytest.mark.core
def test_lifecycle_commands_check_current_status(
    management, store, config, distribution, register_targets
):
    register_targets(4, tags=["fleet"])
    rollout = _create(management, distribution)

    with pytest.raises(StateConflictError):
        management.start_rollout(rollout.id)
    process_rollout(store, rollout.id, config=config)
    with pytest.raises(StateConflictError):
        management.pause_rollout(rollout.id)

    assert management.start_rollout(rollout.id).status == "STARTING"
    process_rollout(store, rollout.id, config=config)
    assert management.pause_rollout(rollout.id).status == "PAUSED"
    with pytest.raises(StateConflictError):
        management.pause_rollout(rollout.id)
    assert management.resume_rollout(rollout.id).status == "RUNNING"

    stopped = management.stop_rollout(rollout.id, reason="bad build")
    assert stopped.status == "STOPPED"
    assert stopped.status_reason == "bad build"
    with pytest.raises(StateConflictError):
        management.stop_rollout(rollout.id)
    with pytest.raises(StateConflictError):
        management.resume_rollout(rollout.id)

    with pytest.raises(NotFoundError):
        management.start_rollout("missing")


@pytest.mark.core
def test_stop_works_before_start(management, distribution, register_targets):
    register_targets(2, tags=["fleet"])
    rollout = _create(management, distribution)
    assert management.stop_rollout(rollout.id).status == "STOPPED"


@pytest.mark.core
def test_rollout_status_view_counts_actions(
    management, store, config, distribution, register_targets
):
    register_targets(4, tags=["fleet"])
    rollout = _create(management, distribution)
    process_rollout(store, rollout.id, config=config)
    management.start_rollout(rollout.id)
    process_rollout(store, rollout.id, config=config)
    actions = store.list_actions(rollout_id=rollout.id)
    management.report_action_status(actions[0].id, "finished", message="done")
    management.report_action_status(actions[1].id, "ERROR")

    view = management.get_rollout_status(rollout.id)
    assert view.rollout.id == rollout.id
    assert view.counts.total == 4
    assert (view.counts.finished, view.counts.error) == (1, 1)
    assert view.counts.not_started == 2
    first, second = view.groups
    assert first.counts.running == 0
    assert second.counts.not_started == 2

    group_view = management.get_group_status(first.group.id)
    assert group_view.counts.finished == 1
    with pytest.raises(NotFoundError):
        management.get_group_status("missing")


@pytest.mark.core
def test_report_action_status_validation(
    management, store, config, distribution, register_targets
):
    register_targets(1, tags=["fleet"])
    rollout = _create(management, distribution, grouping=GroupingSpec(amount=1))
    process_rollout(store, rollout.id, config=config)
    management.start_rollout(rollout.id)
    process_rollout(store, rollout.id, config=config)
    action = store.list_actions(rollout_id=rollout.id)[0]

    with pytest.raises(ValidationError):
        management.report_action_status(action.id, "EXPLODED")
    with pytest.raises(NotFoundError):
        management.report_action_status("missing", "FINISHED")
    management.report_action_status(action.id, "FINISHED")
    with pytest.raises(StateConflictError):
        management.report_action_status(action.id, "ERROR")

    history = management.action_history(action.id)
    assert [entry.status for entry in history] == ["RUNNING", "FINISHED"]


@pytest.mark.core
def test_canceling_action_only_accepts_terminal_reports(
    management, store, config, distribution, register_targets
):
    register_targets(3, tags=["fleet"])
    rollout = _create(management, distribution, grouping=GroupingSpec(amount=1))
    process_rollout(store, rollout.id, config=config)
    management.start_rollout(rollout.id)
    process_rollout(store, rollout.id, config=config)
    management.stop_rollout(rollout.id, reason="bad build")
    first, second, third = store.list_actions(rollout_id=rollout.id)
    assert first.status == "CANCELING"

    for status in ("RUNNING", "DOWNLOAD", "RETRIEVED"):
        with pytest.raises(StateConflictError, match="CANCELING"):
            management.report_action_status(first.id, status)
    assert store.get_action(first.id).status == "CANCELING"

    assert management.report_action_status(first.id, "CANCELED").status == "CANCELED"
    assert management.report_action_status(second.id, "FINISHED").status == "FINISHED"
    assert management.report_action_status(third.id, "ERROR").status == "ERROR"
    history = management.action_history(first.id)
    statuses = [entry.status for entry in history]
    assert "CANCELED" in statuses
    assert statuses.count("RUNNING") == 1


@pytest.mark.core
def test_assign_distribution_creates_manual_action(
    management, store, distribution, register_targets
):
    target = register_targets(1)[0]
    action = management.assign_distribution(
        target_id=target.id,
        distribution_id=distribution.id,
        action_type="soft",
    )
    assert action.rollout_id is None
    assert action.active
    assert action.action_type == "soft"
    with pytest.raises(NotFoundError):
        management.assign_distribution(target_id=target.id, distribution_id="missing")
