from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from urllib.error import HTTPError

import pytest

from rollwave_core.notifications import (
    DeferredNotifier,
    DeliveryOptions,
    RecordingNotifier,
    RolloutEvent,
    WebhookNotifier,
    WebhookRegistration,
    build_notifier,
    delete_webhook,
    deliver_webhook,
    load_webhooks,
    publish_safely,
    register_webhook,
    sign_payload,
    subscribed,
    verify_signature,
)
from rollwave_core.notifications.notifier import NullNotifier


class DummyResponse:
    status = 200

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def getcode(self):
        return 200


def _webhook(**kwargs) -> WebhookRegistration:
    params = {
        "id": "wh_1",
        "name": "ops",
        "url": "https://example.com/hook",
        "secret": None,
        "event_types": None,
        "enabled": True,
        "created_at": "now",
        "updated_at": "now",
    }
    params.update(kwargs)
    return WebhookRegistration(**params)


def _event(event_type: str = "rollout.status_changed") -> RolloutEvent:
    return RolloutEvent(
        event_type=event_type,
        rollout_id="rollout-1",
        payload={"from": "RUNNING", "to": "PAUSED"},
        id="evt_1",
    )


@pytest.mark.core
def test_webhook_delivery_signing(monkeypatch):
    captured: dict[str, object] = {}

    def fake_urlopen(request, timeout):
        captured["request"] = request
        return DummyResponse()

    monkeypatch.setattr("rollwave_core.notifications.delivery.urlopen", fake_urlopen)

    options = DeliveryOptions(timeout_s=1, max_attempts=1, backoff_s=0)
    result, records = deliver_webhook(_webhook(secret="secret"), _event(), options)

    assert result.status == "success"
    assert [record.attempt for record in records] == [1]
    request = captured["request"]
    body = request.data
    assert json.loads(body)["rollout_id"] == "rollout-1"
    headers = {key.lower(): value for key, value in request.header_items()}
    signature = headers["x-rollwave-signature"]
    assert signature == sign_payload("secret", headers["x-rollwave-timestamp"], body)
    assert verify_signature("secret", signature, body)
    assert not verify_signature("other", signature, body)
    assert not verify_signature("secret", signature, body + b" ")


@pytest.mark.core
def test_webhook_delivery_retries_server_errors(monkeypatch):
    calls: list[int] = []

    def fake_urlopen(request, timeout):
        calls.append(1)
        if len(calls) == 1:
            raise HTTPError(request.full_url, 503, "busy", hdrs=None, fp=None)
        return DummyResponse()

    monkeypatch.setattr("rollwave_core.notifications.delivery.urlopen", fake_urlopen)

    options = DeliveryOptions(timeout_s=1, max_attempts=3, backoff_s=0)
    result, records = deliver_webhook(_webhook(), _event(), options)

    assert result.status == "success"
    assert result.attempts == 2
    assert [record.status_code for record in records] == [503, 200]


@pytest.mark.core
def test_webhook_delivery_stops_on_client_error(monkeypatch):
    calls: list[int] = []

    def fake_urlopen(request, timeout):
        calls.append(1)
        raise HTTPError(request.full_url, 404, "missing", hdrs=None, fp=None)

    monkeypatch.setattr("rollwave_core.notifications.delivery.urlopen", fake_urlopen)

    options = DeliveryOptions(timeout_s=1, max_attempts=3, backoff_s=0)
    result, _records = deliver_webhook(_webhook(), _event(), options)

    assert result.status == "failed"
    assert result.status_code == 404
    assert len(calls) == 1


@pytest.mark.core
def test_disabled_webhook_is_skipped(monkeypatch):
    def fail_urlopen(request, timeout):
        raise AssertionError("disabled webhooks must not be called")

    monkeypatch.setattr("rollwave_core.notifications.delivery.urlopen", fail_urlopen)

    result, records = deliver_webhook(
        _webhook(enabled=False), _event(), DeliveryOptions(backoff_s=0)
    )
    assert result.status == "skipped"
    assert records == []


@pytest.mark.core
def test_subscription_patterns():
    assert subscribed(_webhook(), "group.status_changed")
    hook = _webhook(event_types=("group.*", "rollout.stopped"))
    assert subscribed(hook, "group.error_threshold")
    assert subscribed(hook, "rollout.stopped")
    assert not subscribed(hook, "rollout.created")
    assert not subscribed(_webhook(enabled=False), "rollout.created")


@pytest.mark.core
def test_webhook_registry_roundtrip(tmp_path: Path):
    base_uri = tmp_path.as_posix()
    hook = register_webhook(
        base_uri=base_uri,
        name="ops",
        url="https://example.com/hook",
        event_types=["rollout.*", " "],
        headers={"X-Team": "fleet"},
        timeout_s=2.5,
    )
    assert (tmp_path / "control" / "webhooks.json").exists()

    loaded = load_webhooks(base_uri)
    assert loaded == [hook]
    assert loaded[0].event_types == ("rollout.*",)

    delete_webhook(base_uri=base_uri, webhook_id=hook.id)
    assert load_webhooks(base_uri) == []


@pytest.mark.core
def test_webhook_notifier_writes_delivery_log(monkeypatch, tmp_path: Path):
    posted: list[str] = []

    def fake_urlopen(request, timeout):
        posted.append(request.full_url)
        return DummyResponse()

    monkeypatch.setattr("rollwave_core.notifications.delivery.urlopen", fake_urlopen)
    base_uri = tmp_path.as_posix()
    register_webhook(
        base_uri=base_uri,
        name="groups",
        url="https://example.com/groups",
        event_types=["group.*"],
    )
    register_webhook(base_uri=base_uri, name="all", url="https://example.com/all")

    notifier = WebhookNotifier(base_uri, DeliveryOptions(backoff_s=0))
    event = _event("rollout.stopped")
    notifier.publish(event)

    assert posted == ["https://example.com/all"]
    log_path = tmp_path / "audit" / "deliveries" / f"{event.id}.jsonl"
    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0])["event_type"] == "rollout.stopped"
    assert json.loads(lines[1])["status"] == "success"


@pytest.mark.core
def test_publish_safely_swallows_notifier_errors():
    class BrokenNotifier:
        def publish(self, event):
            raise RuntimeError("sink down")

    publish_safely(BrokenNotifier(), _event())

    recorder = RecordingNotifier()
    publish_safely(recorder, _event("group.status_changed"))
    assert recorder.event_types() == ["group.status_changed"]


@pytest.mark.core
def test_deferred_notifier_holds_events_until_flush():
    recorder = RecordingNotifier()
    deferred = DeferredNotifier(recorder)
    deferred.publish(_event())
    deferred.publish(_event("group.status_changed"))
    assert recorder.events == []

    assert deferred.flush() == 2
    assert recorder.event_types() == ["rollout.status_changed", "group.status_changed"]
    assert deferred.flush() == 0


@pytest.mark.core
def test_build_notifier_follows_config(config):
    assert isinstance(build_notifier(config), NullNotifier)
    notifier = build_notifier(replace(config, webhooks_enabled=True))
    assert isinstance(notifier, WebhookNotifier)
    assert notifier.base_uri == config.control_root
