from rollwave_core.auth.authorize import authorize_api_key
from rollwave_core.auth.policy import (
    SYSTEM_CONTEXT,
    AccessPolicy,
    AllowAllPolicy,
    RbacPolicy,
    build_policy,
)
from rollwave_core.auth.rbac import (
    ACTION_ACTIONS_REPORT,
    ACTION_ROLLOUTS_CREATE,
    ACTION_ROLLOUTS_HANDLE,
    ACTION_ROLLOUTS_READ,
    ACTION_ROLLOUTS_TICK,
    ACTION_TARGETS_WRITE,
    DEFAULT_ROLES,
    is_action_allowed,
    load_role_bindings,
)
from rollwave_core.auth.store import (
    find_api_key,
    hash_key,
    load_api_keys,
    register_api_key,
    save_api_keys,
)
from rollwave_core.auth.types import ApiKey, AuthContext

__all__ = [
    "ACTION_ACTIONS_REPORT",
    "ACTION_ROLLOUTS_CREATE",
    "ACTION_ROLLOUTS_HANDLE",
    "ACTION_ROLLOUTS_READ",
    "ACTION_ROLLOUTS_TICK",
    "ACTION_TARGETS_WRITE",
    "AccessPolicy",
    "AllowAllPolicy",
    "ApiKey",
    "AuthContext",
    "DEFAULT_ROLES",
    "RbacPolicy",
    "SYSTEM_CONTEXT",
    "authorize_api_key",
    "build_policy",
    "find_api_key",
    "hash_key",
    "is_action_allowed",
    "load_api_keys",
    "load_role_bindings",
    "register_api_key",
    "save_api_keys",
]
