from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Iterable

import fsspec

from rollwave_core.auth.types import AuthContext
from rollwave_core.storage.paths import control_uri

ACTION_ROLLOUTS_READ = "rollouts:read"
ACTION_ROLLOUTS_CREATE = "rollouts:create"
ACTION_ROLLOUTS_HANDLE = "rollouts:handle"
ACTION_ROLLOUTS_TICK = "rollouts:tick"
ACTION_TARGETS_WRITE = "targets:write"
ACTION_ACTIONS_REPORT = "actions:report"


@dataclass(frozen=True)
class Role:
    name: str
    permissions: tuple[str, ...]


DEFAULT_ROLES: dict[str, Role] = {
    "admin": Role("admin", ("*",)),
    "viewer": Role("viewer", (ACTION_ROLLOUTS_READ,)),
    "operator": Role(
        "operator",
        (
            ACTION_ROLLOUTS_READ,
            ACTION_ROLLOUTS_CREATE,
            ACTION_ROLLOUTS_HANDLE,
            ACTION_TARGETS_WRITE,
        ),
    ),
    "scheduler": Role("scheduler", (ACTION_ROLLOUTS_READ, ACTION_ROLLOUTS_TICK)),
    "device": Role("device", (ACTION_ACTIONS_REPORT,)),
}


def _bindings_uri(base_uri: str) -> str:
    override = os.getenv("RBAC_BINDINGS_URI")
    if override:
        return override
    return control_uri(base_uri, "rbac_bindings.json")


def load_role_bindings(base_uri: str) -> dict[str, list[str]]:
    uri = _bindings_uri(base_uri)
    fs, path = fsspec.core.url_to_fs(uri)
    if not fs.exists(path):
        return {}
    with fs.open(path, "rb") as handle:
        payload = json.loads(handle.read().decode("utf-8"))
    items = payload.get("bindings", []) if isinstance(payload, dict) else []
    bindings: dict[str, list[str]] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        principal_id = str(item.get("principal_id") or "")
        roles = item.get("roles", [])
        if not principal_id or not isinstance(roles, list):
            continue
        bindings[principal_id] = [str(role) for role in roles if role]
    return bindings


def _default_role() -> str | None:
    value = os.getenv("RBAC_DEFAULT_ROLE", "viewer").strip()
    return value or None


def permissions_for_roles(roles: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for role_name in roles:
        role = DEFAULT_ROLES.get(role_name)
        if role:
            permissions.update(role.permissions)
    return permissions


def is_action_allowed(
    auth_context: AuthContext | None,
    action: str,
    base_uri: str,
) -> bool:
    if auth_context is None:
        return False
    if auth_context.is_admin:
        return True

    roles: list[str] | None = None
    if auth_context.roles:
        roles = list(auth_context.roles)
    if not roles:
        bindings = load_role_bindings(base_uri)
        roles = bindings.get(auth_context.principal_id)
        if not roles:
            default_role = _default_role()
            roles = [default_role] if default_role else []

    permissions = permissions_for_roles(roles)
    if "*" in permissions:
        return True
    return action in permissions
