from __future__ import annotations

import secrets

from rollwave_core.auth.store import find_api_key, load_api_keys
from rollwave_core.auth.types import AuthContext
from rollwave_core.errors import AuthError


def authorize_api_key(
    *,
    base_uri: str,
    raw_key: str | None,
    fallback_key: str | None = None,
    require: bool = True,
) -> AuthContext | None:
    if not raw_key:
        if require:
            raise AuthError("API key required")
        return None

    if fallback_key and secrets.compare_digest(raw_key, fallback_key):
        return AuthContext(principal_id="bootstrap", is_admin=True)

    match = find_api_key(raw_key, load_api_keys(base_uri))
    if not match or not match.enabled:
        raise AuthError("Unauthorized")
    return AuthContext(
        principal_id=match.id,
        is_admin=match.is_admin,
        roles=match.roles,
    )
