from __future__ import annotations

import threading
from typing import Protocol

from rollwave_core.config import Config
from rollwave_core.logging import get_logger
from rollwave_core.notifications.delivery import (
    DeliveryOptions,
    DeliveryResult,
    deliver_webhook,
    write_delivery_log,
)
from rollwave_core.notifications.store import load_webhooks, subscribed
from rollwave_core.notifications.types import RolloutEvent

logger = get_logger(__name__)


class Notifier(Protocol):
    def publish(self, event: RolloutEvent) -> None:
        ...


class NullNotifier:
    def publish(self, event: RolloutEvent) -> None:
        return None


class RecordingNotifier:
    """Keeps published events in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[RolloutEvent] = []

    def publish(self, event: RolloutEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[RolloutEvent]:
        with self._lock:
            return list(self._events)

    def event_types(self) -> list[str]:
        return [event.event_type for event in self.events]


class DeferredNotifier:
    """Holds events until :meth:`flush` hands them to the wrapped notifier.

    The scheduler publishes through one of these while it holds a rollout
    lease, so webhook delivery happens after the lease is released.
    """

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._lock = threading.Lock()
        self._pending: list[RolloutEvent] = []

    def publish(self, event: RolloutEvent) -> None:
        with self._lock:
            self._pending.append(event)

    def flush(self) -> int:
        with self._lock:
            pending, self._pending = self._pending, []
        for event in pending:
            publish_safely(self._notifier, event)
        return len(pending)


class WebhookNotifier:
    def __init__(
        self,
        base_uri: str,
        options: DeliveryOptions | None = None,
        *,
        write_logs: bool = True,
    ) -> None:
        self.base_uri = base_uri
        self.options = options or DeliveryOptions()
        self.write_logs = write_logs

    def publish(self, event: RolloutEvent) -> None:
        targets = [
            hook
            for hook in load_webhooks(self.base_uri)
            if subscribed(hook, event.event_type)
        ]
        if not targets:
            return
        results: list[DeliveryResult] = []
        attempts = []
        for webhook in targets:
            result, records = deliver_webhook(webhook, event, self.options)
            results.append(result)
            attempts.extend(records)
            if result.status != "success":
                logger.warning(
                    "Webhook delivery failed",
                    extra={
                        "webhook_id": webhook.id,
                        "event_type": event.event_type,
                        "rollout_id": event.rollout_id,
                        "attempt_count": result.attempts,
                        "error_message": result.error,
                    },
                )
        if self.write_logs and attempts:
            write_delivery_log(base_uri=self.base_uri, event=event, records=attempts)


def publish_safely(notifier: Notifier, event: RolloutEvent) -> None:
    """Publish without letting a notification failure abort engine work."""
    try:
        notifier.publish(event)
    except Exception as exc:
        logger.warning(
            "Rollout notification failed",
            extra={
                "event_type": event.event_type,
                "rollout_id": event.rollout_id,
                "group_id": event.group_id,
                "error_message": str(exc),
            },
        )


def build_notifier(config: Config) -> Notifier:
    if not config.webhooks_enabled:
        return NullNotifier()
    options = DeliveryOptions(
        timeout_s=config.webhook_timeout_s,
        max_attempts=config.webhook_max_attempts,
    )
    return WebhookNotifier(config.control_root_uri(), options)
