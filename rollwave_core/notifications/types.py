from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

EVENT_ROLLOUT_CREATED = "rollout.created"
EVENT_ROLLOUT_STATUS_CHANGED = "rollout.status_changed"
EVENT_ROLLOUT_STOPPED = "rollout.stopped"
EVENT_ACTIONS_ASSIGNED = "rollout.actions_assigned"
EVENT_GROUP_STATUS_CHANGED = "group.status_changed"
EVENT_GROUP_ERROR_THRESHOLD = "group.error_threshold"

EVENT_TYPES = (
    EVENT_ROLLOUT_CREATED,
    EVENT_ROLLOUT_STATUS_CHANGED,
    EVENT_ROLLOUT_STOPPED,
    EVENT_ACTIONS_ASSIGNED,
    EVENT_GROUP_STATUS_CHANGED,
    EVENT_GROUP_ERROR_THRESHOLD,
)


@dataclass(frozen=True)
class RolloutEvent:
    event_type: str
    rollout_id: str
    payload: dict[str, Any]
    group_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


@dataclass(frozen=True)
class WebhookRegistration:
    id: str
    name: str
    url: str
    secret: str | None
    event_types: tuple[str, ...] | None
    enabled: bool
    created_at: str
    updated_at: str
    headers: dict[str, str] | None = None
    timeout_s: float | None = None


def event_to_dict(event: RolloutEvent) -> dict[str, object]:
    return {
        "id": event.id,
        "type": event.event_type,
        "created_at": event.created_at,
        "rollout_id": event.rollout_id,
        "group_id": event.group_id,
        "payload": event.payload,
    }
