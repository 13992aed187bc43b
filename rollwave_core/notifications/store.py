from __future__ import annotations

import json
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Iterable

import fsspec

from rollwave_core.errors import NotFoundError
from rollwave_core.notifications.types import WebhookRegistration
from rollwave_core.storage.paths import control_uri


def webhook_registry_uri(base_uri: str) -> str:
    return control_uri(base_uri, "webhooks.json")


def load_webhooks(base_uri: str) -> list[WebhookRegistration]:
    uri = webhook_registry_uri(base_uri)
    fs, path = fsspec.core.url_to_fs(uri)
    if not fs.exists(path):
        return []
    with fs.open(path, "rb") as handle:
        payload = json.loads(handle.read().decode("utf-8"))
    items = payload.get("webhooks", []) if isinstance(payload, dict) else []
    return [_webhook_from_dict(item) for item in items if isinstance(item, dict)]


def save_webhooks(base_uri: str, webhooks: Iterable[WebhookRegistration]) -> str:
    uri = webhook_registry_uri(base_uri)
    fs, path = fsspec.core.url_to_fs(uri)
    fs.makedirs("/".join(path.split("/")[:-1]), exist_ok=True)
    payload = {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "webhooks": [asdict(hook) for hook in webhooks],
    }
    with fs.open(path, "wb") as handle:
        handle.write(json.dumps(payload, ensure_ascii=True).encode("utf-8"))
    return uri


def register_webhook(
    *,
    base_uri: str,
    name: str,
    url: str,
    secret: str | None = None,
    event_types: Iterable[str] | None = None,
    enabled: bool = True,
    headers: dict[str, str] | None = None,
    timeout_s: float | None = None,
) -> WebhookRegistration:
    now = datetime.now(timezone.utc).isoformat()
    registration = WebhookRegistration(
        id=str(uuid.uuid4()),
        name=name,
        url=url,
        secret=secret,
        event_types=_normalize_event_types(event_types),
        enabled=enabled,
        created_at=now,
        updated_at=now,
        headers=headers,
        timeout_s=timeout_s,
    )
    webhooks = load_webhooks(base_uri)
    webhooks.append(registration)
    save_webhooks(base_uri, webhooks)
    return registration


def delete_webhook(*, base_uri: str, webhook_id: str) -> None:
    webhooks = load_webhooks(base_uri)
    remaining = [hook for hook in webhooks if hook.id != webhook_id]
    if len(remaining) == len(webhooks):
        raise NotFoundError(f"Webhook not found: {webhook_id}")
    save_webhooks(base_uri, remaining)


def subscribed(webhook: WebhookRegistration, event_type: str) -> bool:
    """Match an event against the registration's patterns, e.g. ``group.*``."""
    if not webhook.enabled:
        return False
    if not webhook.event_types:
        return True
    return any(fnmatchcase(event_type, pattern) for pattern in webhook.event_types)


def _normalize_event_types(event_types: Iterable[str] | None) -> tuple[str, ...] | None:
    if not event_types:
        return None
    items = [str(item).strip() for item in event_types if str(item).strip()]
    if not items:
        return None
    return tuple(items)


def _webhook_from_dict(payload: dict[str, object]) -> WebhookRegistration:
    headers = payload.get("headers")
    return WebhookRegistration(
        id=str(payload.get("id")),
        name=str(payload.get("name", "")),
        url=str(payload.get("url", "")),
        secret=str(payload["secret"]) if payload.get("secret") else None,
        event_types=_normalize_event_types(payload.get("event_types")),
        enabled=bool(payload.get("enabled", True)),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
        headers=headers if isinstance(headers, dict) else None,
        timeout_s=_coerce_float(payload.get("timeout_s")),
    )


def _coerce_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
