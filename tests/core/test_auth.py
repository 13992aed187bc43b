from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from rollwave_core.auth import (
    ACTION_ACTIONS_REPORT,
    ACTION_ROLLOUTS_CREATE,
    ACTION_ROLLOUTS_READ,
    ACTION_ROLLOUTS_TICK,
    AllowAllPolicy,
    AuthContext,
    RbacPolicy,
    SYSTEM_CONTEXT,
    authorize_api_key,
    build_policy,
    is_action_allowed,
    register_api_key,
)
from rollwave_core.errors import AuthError
from rollwave_core.rollouts.management import RolloutManagement
from rollwave_core.rollouts.types import GroupingSpec


def _write_bindings(path, bindings):
    payload = {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "bindings": bindings,
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


@pytest.mark.core
def test_authorize_api_key_registry(tmp_path):
    base_uri = tmp_path.as_posix()
    key = register_api_key(
        base_uri=base_uri,
        name="ci",
        raw_key="secret-1",
        roles=["operator"],
    )
    register_api_key(base_uri=base_uri, name="old", raw_key="secret-2", enabled=False)

    context = authorize_api_key(base_uri=base_uri, raw_key="secret-1")
    assert context.principal_id == key.id
    assert context.roles == ("operator",)
    assert context.actor == f"api_key:{key.id}"

    with pytest.raises(AuthError):
        authorize_api_key(base_uri=base_uri, raw_key="secret-2")
    with pytest.raises(AuthError):
        authorize_api_key(base_uri=base_uri, raw_key="nope")
    with pytest.raises(AuthError):
        authorize_api_key(base_uri=base_uri, raw_key=None)
    assert authorize_api_key(base_uri=base_uri, raw_key=None, require=False) is None


@pytest.mark.core
def test_authorize_api_key_fallback(tmp_path):
    context = authorize_api_key(
        base_uri=tmp_path.as_posix(),
        raw_key="bootstrap-key",
        fallback_key="bootstrap-key",
    )
    assert context.is_admin
    assert context.principal_id == "bootstrap"


@pytest.mark.core
def test_rbac_default_role(monkeypatch, tmp_path):
    monkeypatch.setenv("RBAC_DEFAULT_ROLE", "viewer")
    auth = AuthContext(principal_id="key-1")

    assert is_action_allowed(auth, ACTION_ROLLOUTS_READ, tmp_path.as_posix())
    assert not is_action_allowed(auth, ACTION_ROLLOUTS_CREATE, tmp_path.as_posix())
    assert not is_action_allowed(None, ACTION_ROLLOUTS_READ, tmp_path.as_posix())


@pytest.mark.core
def test_rbac_bindings_override(monkeypatch, tmp_path):
    bindings_path = tmp_path / "rbac_bindings.json"
    _write_bindings(
        bindings_path,
        [{"principal_id": "key-1", "roles": ["operator"]}],
    )
    monkeypatch.setenv("RBAC_BINDINGS_URI", bindings_path.as_posix())

    auth = AuthContext(principal_id="key-1")
    assert is_action_allowed(auth, ACTION_ROLLOUTS_CREATE, tmp_path.as_posix())
    assert not is_action_allowed(auth, ACTION_ACTIONS_REPORT, tmp_path.as_posix())


@pytest.mark.core
def test_rbac_roles_on_context_and_admin(tmp_path):
    base_uri = tmp_path.as_posix()
    assert is_action_allowed(SYSTEM_CONTEXT, ACTION_ROLLOUTS_TICK, base_uri)
    assert not is_action_allowed(SYSTEM_CONTEXT, ACTION_ROLLOUTS_CREATE, base_uri)
    device = AuthContext(principal_id="edge-001", roles=("device",))
    assert is_action_allowed(device, ACTION_ACTIONS_REPORT, base_uri)
    admin = AuthContext(principal_id="root", is_admin=True)
    assert is_action_allowed(admin, ACTION_ROLLOUTS_CREATE, base_uri)


@pytest.mark.core
def test_build_policy(config):
    assert isinstance(build_policy(config), AllowAllPolicy)
    policy = build_policy(replace(config, rbac_enforce=True))
    assert isinstance(policy, RbacPolicy)
    assert policy.base_uri == config.control_root


@pytest.mark.core
def test_management_enforces_policy(store, config, distribution, register_targets):
    register_targets(2, tags=["fleet"])
    management = RolloutManagement(
        store,
        config=config,
        policy=RbacPolicy(config.control_root),
    )
    viewer = AuthContext(principal_id="reader", roles=("viewer",))
    operator = AuthContext(principal_id="ops", roles=("operator",))

    with pytest.raises(AuthError):
        management.create_rollout(
            name="blocked",
            distribution_id=distribution.id,
            target_filter="tag==fleet",
            grouping=GroupingSpec(amount=1),
            auth_context=viewer,
        )
    rollout = management.create_rollout(
        name="allowed",
        distribution_id=distribution.id,
        target_filter="tag==fleet",
        grouping=GroupingSpec(amount=1),
        auth_context=operator,
    )
    assert rollout.created_by == "api_key:ops"
    assert management.get_rollout(rollout.id, auth_context=viewer).id == rollout.id
    with pytest.raises(AuthError):
        management.stop_rollout(rollout.id, auth_context=viewer)
    with pytest.raises(AuthError):
        management.list_rollouts()
