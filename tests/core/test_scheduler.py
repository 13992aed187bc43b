from __future__ import annotations

import threading
import time
from dataclasses import replace

import pytest

from rollwave_core.errors import PermanentError, RecoverableError
from rollwave_core.notifications import RecordingNotifier, RolloutEvent
from rollwave_core.rollouts import scheduler as scheduler_module
from rollwave_core.rollouts.scheduler import (
    RolloutScheduler,
    lock_name,
    run_scheduler_tick,
)
from rollwave_core.rollouts.types import GroupingSpec


def _rollout(management, distribution, amount=1):
    return management.create_rollout(
        name="scheduled",
        distribution_id=distribution.id,
        target_filter="tag==fleet",
        grouping=GroupingSpec(amount=amount),
    )


@pytest.mark.core
def test_tick_drives_rollout_through_lifecycle(
    management, store, config, distribution, register_targets
):
    register_targets(4, tags=["fleet"])
    rollout = _rollout(management, distribution)
    notifier = RecordingNotifier()

    result = run_scheduler_tick(store, config=config, notifier=notifier)
    assert result.processed == 1
    assert store.get_rollout(rollout.id).status == "READY"

    management.start_rollout(rollout.id)
    run_scheduler_tick(store, config=config, notifier=notifier)
    assert store.get_rollout(rollout.id).status == "RUNNING"

    for action in store.list_actions(rollout_id=rollout.id):
        store.update_action_status(action.id, status="FINISHED")
    run_scheduler_tick(store, config=config, notifier=notifier)
    assert store.get_rollout(rollout.id).status == "FINISHED"

    result = run_scheduler_tick(store, config=config, notifier=notifier)
    assert (result.processed, result.skipped, result.failed) == (0, 0, 0)


@pytest.mark.core
def test_tick_skips_locked_rollout(
    management, store, config, distribution, register_targets
):
    register_targets(2, tags=["fleet"])
    rollout = _rollout(management, distribution)
    assert store.acquire_lock(lock_name(rollout.id), owner="other", ttl_seconds=60)

    result = run_scheduler_tick(store, config=config, owner="me")
    assert result.skipped == 1
    assert store.get_rollout(rollout.id).status == "CREATING"

    store.release_lock(lock_name(rollout.id), owner="other")
    result = run_scheduler_tick(store, config=config, owner="me")
    assert result.processed == 1
    assert store.acquire_lock(lock_name(rollout.id), owner="next", ttl_seconds=60)


@pytest.mark.core
def test_expired_lock_is_taken_over(
    management, store, config, distribution, register_targets
):
    register_targets(2, tags=["fleet"])
    rollout = _rollout(management, distribution)
    with store._session(write=True) as conn:
        conn.execute(
            "INSERT INTO locks (name, owner, expires_at) VALUES (?, ?, ?)",
            (lock_name(rollout.id), "crashed", "2000-01-01T00:00:00.000000+00:00"),
        )

    result = run_scheduler_tick(store, config=config, owner="me")
    assert result.processed == 1


@pytest.mark.core
def test_permanent_failure_marks_rollout_and_continues(
    management, store, config, distribution, register_targets, monkeypatch
):
    register_targets(2, tags=["fleet"])
    broken = _rollout(management, distribution)
    healthy = _rollout(management, distribution)
    original = scheduler_module.process_rollout

    def flaky_process(store_arg, rollout_id, **kwargs):
        if rollout_id == broken.id:
            raise PermanentError("bad rollout")
        return original(store_arg, rollout_id, **kwargs)

    monkeypatch.setattr(scheduler_module, "process_rollout", flaky_process)
    result = run_scheduler_tick(store, config=config)

    assert (result.processed, result.failed) == (1, 1)
    failed = store.get_rollout(broken.id)
    assert failed.status == "ERROR_CREATING"
    assert failed.status_reason == "bad rollout"
    assert store.get_rollout(healthy.id).status == "READY"


@pytest.mark.core
def test_recoverable_failure_leaves_rollout_for_next_tick(
    management, store, config, distribution, register_targets, monkeypatch
):
    register_targets(2, tags=["fleet"])
    rollout = _rollout(management, distribution)

    def unavailable(*_args, **_kwargs):
        raise RecoverableError("database is locked")

    monkeypatch.setattr(scheduler_module, "process_rollout", unavailable)
    result = run_scheduler_tick(store, config=config)
    assert result.failed == 1
    assert store.get_rollout(rollout.id).status == "CREATING"
    assert store.acquire_lock(lock_name(rollout.id), owner="next", ttl_seconds=60)


@pytest.mark.core
def test_concurrent_schedulers_assign_each_target_once(
    management, store, config, distribution, register_targets
):
    register_targets(40, tags=["fleet"])
    small = replace(config, assign_batch_size=7)
    rollouts = [_rollout(management, distribution, amount=2) for _ in range(3)]
    run_scheduler_tick(store, config=small)
    for rollout in rollouts:
        management.start_rollout(rollout.id)

    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def worker(owner: str) -> None:
        try:
            barrier.wait()
            for _ in range(3):
                run_scheduler_tick(store, config=small, owner=owner)
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(f"w{idx}",)) for idx in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    for rollout in rollouts:
        first = store.list_groups(rollout.id)[0]
        actions = store.list_actions(group_id=first.id)
        assert len(actions) == 20
        assert len({action.target_id for action in actions}) == 20
    # Later rollouts supersede earlier ones, so each target has one active action.
    active = store.list_actions(active=True)
    assert len({action.target_id for action in active}) == len(active)


@pytest.mark.core
def test_background_scheduler_ticks_until_stopped(
    management, store, config, distribution, register_targets
):
    register_targets(2, tags=["fleet"])
    rollout = _rollout(management, distribution)
    ticked = threading.Event()
    scheduler = RolloutScheduler(store, config=config, interval_seconds=0.1)
    original_tick = scheduler.tick

    def tick():
        result = original_tick()
        ticked.set()
        return result

    scheduler.tick = tick
    scheduler.start()
    try:
        assert ticked.wait(timeout=5)
    finally:
        scheduler.stop()
    assert store.get_rollout(rollout.id).status == "READY"
    assert scheduler.last_result() is not None


@pytest.mark.core
def test_lease_is_renewed_during_long_step(
    management, store, config, distribution, register_targets, monkeypatch
):
    register_targets(2, tags=["fleet"])
    _rollout(management, distribution)
    short = replace(config, rollout_lock_ttl_seconds=1)
    guard = threading.Lock()
    running = [0]
    peak = [0]

    def slow_step(*_args, **_kwargs):
        with guard:
            running[0] += 1
            peak[0] = max(peak[0], running[0])
        time.sleep(1.5)
        with guard:
            running[0] -= 1
        return "CREATING"

    monkeypatch.setattr(scheduler_module, "process_rollout", slow_step)
    results = {}

    def tick(owner: str) -> None:
        results[owner] = run_scheduler_tick(store, config=short, owner=owner)

    first = threading.Thread(target=tick, args=("a",))
    first.start()
    time.sleep(1.2)
    second = threading.Thread(target=tick, args=("b",))
    second.start()
    first.join()
    second.join()

    assert peak[0] == 1
    assert results["a"].processed == 1
    assert results["b"].skipped == 1


@pytest.mark.core
def test_notifications_are_published_after_lease_release(
    management, store, config, distribution, register_targets
):
    register_targets(2, tags=["fleet"])
    rollout = _rollout(management, distribution)
    name = lock_name(rollout.id)

    class LockCheckingNotifier(RecordingNotifier):
        def __init__(self) -> None:
            super().__init__()
            self.held_during_publish: list[bool] = []

        def publish(self, event: RolloutEvent) -> None:
            with store._session() as conn:
                row = conn.execute(
                    "SELECT owner FROM locks WHERE name = ?", (name,)
                ).fetchone()
            self.held_during_publish.append(row is not None)
            super().publish(event)

    notifier = LockCheckingNotifier()
    run_scheduler_tick(store, config=config, notifier=notifier)

    assert store.get_rollout(rollout.id).status == "READY"
    assert "rollout.status_changed" in notifier.event_types()
    assert notifier.held_during_publish
    assert not any(notifier.held_during_publish)


@pytest.mark.core
def test_release_keeps_lease_taken_over_by_same_scheduler(
    management, store, config, distribution, register_targets, monkeypatch
):
    register_targets(2, tags=["fleet"])
    rollout = _rollout(management, distribution)
    name = lock_name(rollout.id)

    def overrun_step(*_args, **_kwargs):
        # The lease expires mid-step and the next holder takes it.
        with store._session(write=True) as conn:
            conn.execute(
                "UPDATE locks SET expires_at = ? WHERE name = ?",
                ("2000-01-01T00:00:00.000000+00:00", name),
            )
        assert store.acquire_lock(name, owner="sched-1", ttl_seconds=60)
        return "CREATING"

    monkeypatch.setattr(scheduler_module, "process_rollout", overrun_step)
    result = run_scheduler_tick(store, config=config, owner="sched-1")
    assert result.processed == 1

    with store._session() as conn:
        row = conn.execute(
            "SELECT owner FROM locks WHERE name = ?", (name,)
        ).fetchone()
    assert row is not None
    assert row["owner"] == "sched-1"
    assert not store.acquire_lock(name, owner="sched-2", ttl_seconds=60)
