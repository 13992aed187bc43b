from __future__ import annotations

import json

from rollwave_cli import cli


def _capture(monkeypatch, response=None):
    captured: list[dict[str, object]] = []

    def fake_request(method, url, payload=None, timeout=30):
        captured.append({"method": method, "url": url, "payload": payload})
        return response if response is not None else {"status": "ok"}

    monkeypatch.setattr(cli, "_request_json", fake_request)
    return captured


def test_cli_status(monkeypatch, capsys):
    captured = _capture(monkeypatch, {"status": "ok", "service": "rollouts"})
    code = cli.main(["--api-url", "http://localhost:9000/", "status"])
    assert code == 0
    assert captured[0]["url"] == "http://localhost:9000/health"
    assert "rollouts" in capsys.readouterr().out


def test_cli_target_add(monkeypatch):
    captured = _capture(monkeypatch)
    code = cli.main(
        [
            "targets",
            "add",
            "--controller-id",
            "edge-001",
            "--tag",
            "fleet",
            "--tag",
            "beta",
            "--attribute",
            "hw=rev2",
        ]
    )
    assert code == 0
    request = captured[0]
    assert request["method"] == "POST"
    assert request["url"] == "http://localhost:8090/targets"
    assert request["payload"] == {
        "controller_id": "edge-001",
        "tags": ["fleet", "beta"],
        "attributes": {"hw": "rev2"},
    }


def test_cli_rollout_create(monkeypatch, capsys):
    captured = _capture(monkeypatch, {"id": "rollout-1", "status": "CREATING"})
    code = cli.main(
        [
            "rollouts",
            "create",
            "--name",
            "firmware 2.4",
            "--distribution-id",
            "dist-1",
            "--filter",
            "tag==fleet",
            "--amount",
            "3",
            "--success",
            "percentage:90",
            "--error",
            "count:5",
            "--start-at",
            "2030-01-01T00:00:00Z",
        ]
    )
    assert code == 0
    payload = captured[0]["payload"]
    assert captured[0]["url"].endswith("/rollouts")
    assert payload["amount"] == 3
    assert payload["success_condition"] == {"kind": "percentage", "threshold": 90}
    assert payload["error_condition"] == {"kind": "count", "threshold": 5}
    assert payload["error_action"] == "PAUSE"
    assert payload["action_type"] == "forced"
    assert payload["start_at"] == "2030-01-01T00:00:00Z"
    assert "groups" not in payload
    assert "rollout-1" in capsys.readouterr().out


def test_cli_rollout_create_with_groups(monkeypatch):
    captured = _capture(monkeypatch)
    groups = [{"target_percentage": 10}, {"target_percentage": 100}]
    code = cli.main(
        [
            "rollouts",
            "create",
            "--name",
            "canary",
            "--distribution-id",
            "dist-1",
            "--filter",
            "tag==fleet",
            "--groups-json",
            json.dumps(groups),
        ]
    )
    assert code == 0
    payload = captured[0]["payload"]
    assert payload["groups"] == groups
    assert "amount" not in payload


def test_cli_rollout_create_rejects_bad_condition(monkeypatch, capsys):
    captured = _capture(monkeypatch)
    code = cli.main(
        [
            "rollouts",
            "create",
            "--name",
            "bad",
            "--distribution-id",
            "dist-1",
            "--filter",
            "tag==fleet",
            "--success",
            "ninety",
        ]
    )
    assert code == 1
    assert captured == []
    assert "kind:threshold" in capsys.readouterr().err


def test_cli_rollout_commands(monkeypatch):
    captured = _capture(monkeypatch)
    assert cli.main(["rollouts", "stop", "rollout-1", "--reason", "bad build"]) == 0
    assert cli.main(["rollouts", "start", "rollout-1"]) == 0
    assert cli.main(["rollouts", "trigger-next", "rollout-1"]) == 0
    assert cli.main(["rollouts", "list", "--status", "running"]) == 0

    assert captured[0]["url"].endswith("/rollouts/rollout-1/stop")
    assert captured[0]["payload"] == {"reason": "bad build"}
    assert captured[1]["url"].endswith("/rollouts/rollout-1/start")
    assert captured[1]["payload"] is None
    assert captured[2]["url"].endswith("/rollouts/rollout-1/trigger-next")
    assert captured[3]["url"].endswith("/rollouts?status=running")


def test_cli_action_report(monkeypatch):
    captured = _capture(monkeypatch)
    code = cli.main(
        ["actions", "report", "action-1", "--status", "finished", "--message", "ok"]
    )
    assert code == 0
    assert captured[0]["url"].endswith("/actions/action-1/status")
    assert captured[0]["payload"] == {"status": "finished", "message": "ok"}


def test_cli_reports_http_errors(monkeypatch, capsys):
    def fake_request(method, url, payload=None, timeout=30):
        raise RuntimeError("HTTP 409 {'detail': 'Cannot start rollout'}")

    monkeypatch.setattr(cli, "_request_json", fake_request)
    assert cli.main(["rollouts", "start", "rollout-1"]) == 1
    assert "HTTP 409" in capsys.readouterr().err


def test_cli_up_dry_run(capsys):
    code = cli.main(["up", "--port", "9100", "--dry-run"])
    assert code == 0
    output = capsys.readouterr().out
    assert "local_adapter.rollout_service:app" in output
    assert "--port 9100" in output


def test_cli_local_tick(capsys):
    assert cli.main(["tick", "--local"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["processed"] == 0
    assert result["failed"] == 0


def test_cli_scheduler_iterations(capsys):
    code = cli.main(["scheduler", "--iterations", "2", "--interval", "0.01"])
    assert code == 0
    output = capsys.readouterr().out
    assert output.count('"tick_id"') == 2


def test_cli_requires_command(capsys):
    assert cli.main([]) == 2
