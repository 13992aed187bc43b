from __future__ import annotations

import os
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from rollwave_core.config import Config, get_config
from rollwave_core.errors import PermanentError, RecoverableError
from rollwave_core.logging import get_logger
from rollwave_core.notifications.notifier import (
    DeferredNotifier,
    Notifier,
    build_notifier,
)
from rollwave_core.rollouts.engine import mark_failed, process_rollout
from rollwave_core.rollouts.types import ROLLOUT_ACTIVE_STATUSES
from rollwave_core.stores.interfaces import RolloutStore
from rollwave_core.stores.registry import get_rollout_store

logger = get_logger(__name__)

_PROCESSED = "processed"
_SKIPPED = "skipped"
_FAILED = "failed"


@dataclass(frozen=True)
class TickResult:
    tick_id: str
    processed: int
    skipped: int
    failed: int
    duration_ms: int

    def to_dict(self) -> dict[str, object]:
        return {
            "tick_id": self.tick_id,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
        }


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def lock_name(rollout_id: str) -> str:
    return f"rollout:{rollout_id}"


def run_scheduler_tick(
    store: RolloutStore | None = None,
    *,
    config: Config | None = None,
    notifier: Notifier | None = None,
    owner: str | None = None,
) -> TickResult:
    """Give every active rollout one engine step.

    Rollouts are handled in parallel, each under its own lease so two
    schedulers never drive the same rollout at once. A failure on one rollout
    is logged and counted; it never stops the others.
    """
    config = config or get_config()
    store = store or get_rollout_store(config)
    notifier = notifier or build_notifier(config)
    owner = owner or default_owner()
    tick_id = str(uuid.uuid4())
    started = time.monotonic()

    rollouts = store.list_rollouts(ROLLOUT_ACTIVE_STATUSES)
    outcomes: list[str] = []
    if rollouts:
        workers = max(1, min(config.scheduler_workers, len(rollouts)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            outcomes = list(
                executor.map(
                    lambda rollout: _tick_rollout(
                        store,
                        rollout.id,
                        config=config,
                        notifier=notifier,
                        owner=owner,
                    ),
                    rollouts,
                )
            )

    result = TickResult(
        tick_id=tick_id,
        processed=outcomes.count(_PROCESSED),
        skipped=outcomes.count(_SKIPPED),
        failed=outcomes.count(_FAILED),
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info(
        "Scheduler tick completed",
        extra={
            "worker_id": owner,
            "processed": result.processed,
            "skipped": result.skipped,
            "failed": result.failed,
            "duration_ms": result.duration_ms,
        },
    )
    return result


class LeaseKeeper:
    """Renews a rollout lease from a side thread while a step runs."""

    def __init__(
        self,
        store: RolloutStore,
        name: str,
        *,
        owner: str,
        ttl_seconds: int,
    ) -> None:
        self._store = store
        self._name = name
        self._owner = owner
        self._ttl_seconds = ttl_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.lost = False

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        interval = max(0.05, self._ttl_seconds / 3)
        while not self._stop.wait(interval):
            try:
                renewed = self._store.renew_lock(
                    self._name,
                    owner=self._owner,
                    ttl_seconds=self._ttl_seconds,
                )
            except RecoverableError as exc:
                logger.warning(
                    "Rollout lease renewal failed",
                    extra={"worker_id": self._owner, "error_message": str(exc)},
                )
                continue
            if not renewed:
                self.lost = True
                logger.warning(
                    "Rollout lease lost",
                    extra={"worker_id": self._owner, "error_code": "lease_lost"},
                )
                return


def _tick_rollout(
    store: RolloutStore,
    rollout_id: str,
    *,
    config: Config,
    notifier: Notifier,
    owner: str,
) -> str:
    name = lock_name(rollout_id)
    lease_owner = f"{owner}:{uuid.uuid4().hex[:8]}"
    try:
        acquired = store.acquire_lock(
            name,
            owner=lease_owner,
            ttl_seconds=config.rollout_lock_ttl_seconds,
        )
    except RecoverableError as exc:
        logger.warning(
            "Rollout lock unavailable",
            extra={"rollout_id": rollout_id, "error_message": str(exc)},
        )
        return _FAILED
    if not acquired:
        return _SKIPPED
    keeper = LeaseKeeper(
        store,
        name,
        owner=lease_owner,
        ttl_seconds=config.rollout_lock_ttl_seconds,
    )
    keeper.start()
    events = DeferredNotifier(notifier)
    try:
        status = process_rollout(store, rollout_id, config=config, notifier=events)
        logger.debug(
            "Rollout processed",
            extra={"rollout_id": rollout_id, "rollout_status": status},
        )
        return _PROCESSED
    except PermanentError as exc:
        logger.error(
            "Rollout failed",
            extra={
                "rollout_id": rollout_id,
                "error_code": "permanent",
                "error_message": str(exc),
            },
        )
        mark_failed(store, rollout_id, exc, notifier=events)
        return _FAILED
    except RecoverableError as exc:
        logger.warning(
            "Rollout step deferred",
            extra={
                "rollout_id": rollout_id,
                "error_code": "recoverable",
                "error_message": str(exc),
            },
        )
        return _FAILED
    except Exception as exc:
        logger.exception(
            "Rollout step crashed",
            extra={"rollout_id": rollout_id, "error_message": str(exc)},
        )
        return _FAILED
    finally:
        keeper.stop()
        try:
            store.release_lock(name, owner=lease_owner)
        except RecoverableError as exc:
            logger.warning(
                "Rollout lock release failed",
                extra={"rollout_id": rollout_id, "error_message": str(exc)},
            )
        events.flush()


class RolloutScheduler:
    """Background thread calling :func:`run_scheduler_tick` on an interval."""

    def __init__(
        self,
        store: RolloutStore,
        *,
        config: Config,
        notifier: Notifier | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._notifier = notifier or build_notifier(config)
        self._interval_seconds = max(
            0.1,
            interval_seconds
            if interval_seconds is not None
            else config.scheduler_interval_seconds,
        )
        self._owner = default_owner()
        self._lock = threading.Lock()
        self._last: TickResult | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def owner(self) -> str:
        return self._owner

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        logger.info(
            "Rollout scheduler started",
            extra={"worker_id": self._owner},
        )

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def last_result(self) -> TickResult | None:
        with self._lock:
            return self._last

    def tick(self) -> TickResult:
        result = run_scheduler_tick(
            self._store,
            config=self._config,
            notifier=self._notifier,
            owner=self._owner,
        )
        with self._lock:
            self._last = result
        return result

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as exc:
                logger.warning(
                    "Scheduler tick failed",
                    extra={"worker_id": self._owner, "error_message": str(exc)},
                )
            self._stop.wait(self._interval_seconds)
