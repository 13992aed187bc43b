from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Iterable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import fsspec

from rollwave_core.notifications.types import (
    RolloutEvent,
    WebhookRegistration,
    event_to_dict,
)
from rollwave_core.storage.paths import join_uri


@dataclass(frozen=True)
class DeliveryOptions:
    timeout_s: float = 10.0
    max_attempts: int = 3
    backoff_s: float = 0.5
    retry_statuses: tuple[int, ...] = (429, 500, 502, 503, 504)


@dataclass(frozen=True)
class DeliveryAttempt:
    delivery_id: str
    event_id: str
    webhook_id: str
    attempt: int
    status: str
    status_code: int | None
    error: str | None
    duration_ms: int
    delivered_at: str


@dataclass(frozen=True)
class DeliveryResult:
    webhook_id: str
    event_id: str
    status: str
    status_code: int | None
    attempts: int
    duration_ms: int
    error: str | None = None


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    message = f"{timestamp}.".encode("utf-8") + body
    signature = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def verify_signature(secret: str, header: str, body: bytes) -> bool:
    parts = dict(
        item.split("=", 1) for item in header.split(",") if "=" in item
    )
    timestamp = parts.get("t")
    if not timestamp or "v1" not in parts:
        return False
    expected = sign_payload(secret, timestamp, body)
    return hmac.compare_digest(expected, header)


def deliver_webhook(
    webhook: WebhookRegistration,
    event: RolloutEvent,
    options: DeliveryOptions,
) -> tuple[DeliveryResult, list[DeliveryAttempt]]:
    if not webhook.enabled:
        result = DeliveryResult(
            webhook_id=webhook.id,
            event_id=event.id,
            status="skipped",
            status_code=None,
            attempts=0,
            duration_ms=0,
        )
        return result, []

    body = json.dumps(event_to_dict(event), ensure_ascii=True).encode("utf-8")
    timestamp = datetime.now(timezone.utc).isoformat()
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "Rollwave-Webhooks/1.0",
        "X-Rollwave-Event": event.event_type,
        "X-Rollwave-Event-Id": event.id,
        "X-Rollwave-Rollout-Id": event.rollout_id,
        "X-Rollwave-Timestamp": timestamp,
    }
    if webhook.secret:
        headers["X-Rollwave-Signature"] = sign_payload(webhook.secret, timestamp, body)
    if webhook.headers:
        headers.update(webhook.headers)

    timeout_s = webhook.timeout_s or options.timeout_s
    delivery_id = str(uuid.uuid4())
    attempts = 0
    started = time.monotonic()
    records: list[DeliveryAttempt] = []
    last_error: str | None = None
    last_status: int | None = None

    while attempts < max(1, options.max_attempts):
        attempts += 1
        attempt_start = time.monotonic()
        status: str
        status_code: int | None = None
        error: str | None = None
        try:
            request = Request(webhook.url, data=body, headers=headers, method="POST")
            with urlopen(request, timeout=timeout_s) as response:
                status_code = getattr(response, "status", None) or response.getcode()
                status = "success" if 200 <= status_code < 300 else "failed"
        except HTTPError as exc:
            status_code = exc.code
            status = "failed"
            error = exc.reason if isinstance(exc.reason, str) else str(exc)
        except URLError as exc:
            status = "failed"
            error = str(exc)
        except OSError as exc:
            status = "failed"
            error = str(exc)

        records.append(
            DeliveryAttempt(
                delivery_id=delivery_id,
                event_id=event.id,
                webhook_id=webhook.id,
                attempt=attempts,
                status=status,
                status_code=status_code,
                error=error,
                duration_ms=int((time.monotonic() - attempt_start) * 1000),
                delivered_at=datetime.now(timezone.utc).isoformat(),
            )
        )
        last_error = error
        last_status = status_code

        if status == "success":
            result = DeliveryResult(
                webhook_id=webhook.id,
                event_id=event.id,
                status="success",
                status_code=status_code,
                attempts=attempts,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return result, records

        if not _should_retry(status_code, options.retry_statuses):
            break

        if attempts < options.max_attempts and options.backoff_s > 0:
            time.sleep(options.backoff_s * (2 ** (attempts - 1)))

    result = DeliveryResult(
        webhook_id=webhook.id,
        event_id=event.id,
        status="failed",
        status_code=last_status,
        attempts=attempts,
        duration_ms=int((time.monotonic() - started) * 1000),
        error=last_error,
    )
    return result, records


def write_delivery_log(
    *,
    base_uri: str,
    event: RolloutEvent,
    records: Iterable[DeliveryAttempt],
) -> str:
    dest_uri = join_uri(base_uri, "audit", "deliveries", f"{event.id}.jsonl")
    fs, path = fsspec.core.url_to_fs(dest_uri)
    fs.makedirs("/".join(path.split("/")[:-1]), exist_ok=True)
    with fs.open(path, "wb") as handle:
        header = {
            "event_id": event.id,
            "event_type": event.event_type,
            "rollout_id": event.rollout_id,
            "written_at": datetime.now(timezone.utc).isoformat(),
        }
        handle.write((json.dumps(header) + "\n").encode("utf-8"))
        for record in records:
            handle.write((json.dumps(asdict(record)) + "\n").encode("utf-8"))
    return dest_uri


def _should_retry(status_code: int | None, retry_statuses: tuple[int, ...]) -> bool:
    if status_code is None:
        return True
    return status_code in retry_statuses
