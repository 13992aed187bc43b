from __future__ import annotations

import hashlib
import json
import os
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Iterable

import fsspec

from rollwave_core.auth.types import ApiKey
from rollwave_core.storage.paths import control_uri


def api_key_registry_uri(base_uri: str) -> str:
    override = os.getenv("API_KEY_REGISTRY_URI")
    if override:
        return override
    return control_uri(base_uri, "api_keys.json")


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def load_api_keys(base_uri: str) -> list[ApiKey]:
    uri = api_key_registry_uri(base_uri)
    fs, path = fsspec.core.url_to_fs(uri)
    if not fs.exists(path):
        return []
    with fs.open(path, "rb") as handle:
        payload = json.loads(handle.read().decode("utf-8"))
    items = payload.get("api_keys", []) if isinstance(payload, dict) else []
    return [_api_key_from_dict(item) for item in items if isinstance(item, dict)]


def save_api_keys(base_uri: str, keys: Iterable[ApiKey]) -> str:
    uri = api_key_registry_uri(base_uri)
    fs, path = fsspec.core.url_to_fs(uri)
    fs.makedirs("/".join(path.split("/")[:-1]), exist_ok=True)
    payload = {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "api_keys": [asdict(key) for key in keys],
    }
    with fs.open(path, "wb") as handle:
        handle.write(json.dumps(payload, ensure_ascii=True).encode("utf-8"))
    return uri


def register_api_key(
    *,
    base_uri: str,
    name: str,
    raw_key: str,
    roles: Iterable[str] | None = None,
    enabled: bool = True,
    is_admin: bool = False,
) -> ApiKey:
    now = datetime.now(timezone.utc).isoformat()
    key = ApiKey(
        id=str(uuid.uuid4()),
        name=name,
        key_hash=hash_key(raw_key),
        enabled=enabled,
        is_admin=is_admin,
        roles=_normalize_roles(roles),
        created_at=now,
        updated_at=now,
    )
    keys = load_api_keys(base_uri)
    keys.append(key)
    save_api_keys(base_uri, keys)
    return key


def find_api_key(raw_key: str, keys: Iterable[ApiKey]) -> ApiKey | None:
    target_hash = hash_key(raw_key)
    for key in keys:
        if key.key_hash == target_hash:
            return key
    return None


def _normalize_roles(roles: object) -> tuple[str, ...] | None:
    if not isinstance(roles, (list, tuple, set)):
        return None
    cleaned = [str(role).strip() for role in roles if str(role).strip()]
    return tuple(cleaned) or None


def _api_key_from_dict(payload: dict[str, object]) -> ApiKey:
    return ApiKey(
        id=str(payload.get("id")),
        name=str(payload.get("name", "")),
        key_hash=str(payload.get("key_hash", "")),
        enabled=bool(payload.get("enabled", True)),
        is_admin=bool(payload.get("is_admin", False)),
        roles=_normalize_roles(payload.get("roles")),
        created_at=str(payload.get("created_at", "")),
        updated_at=str(payload.get("updated_at", "")),
    )
