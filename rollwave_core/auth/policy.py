from __future__ import annotations

from typing import Protocol

from rollwave_core.auth.rbac import is_action_allowed
from rollwave_core.auth.types import AuthContext
from rollwave_core.config import Config
from rollwave_core.errors import AuthError
from rollwave_core.logging import get_logger

logger = get_logger(__name__)

SYSTEM_CONTEXT = AuthContext(
    principal_id="rollwave-scheduler",
    actor_type="system",
    roles=("scheduler",),
)


class AccessPolicy(Protocol):
    def authorize(
        self,
        auth_context: AuthContext | None,
        action: str,
        resource: str | None = None,
    ) -> None:
        ...


class AllowAllPolicy:
    def authorize(
        self,
        auth_context: AuthContext | None,
        action: str,
        resource: str | None = None,
    ) -> None:
        return None


class RbacPolicy:
    """Role-based check raising AuthError when the action is not granted."""

    def __init__(self, base_uri: str) -> None:
        self.base_uri = base_uri

    def authorize(
        self,
        auth_context: AuthContext | None,
        action: str,
        resource: str | None = None,
    ) -> None:
        if is_action_allowed(auth_context, action, self.base_uri):
            return
        logger.warning(
            "Access denied",
            extra={
                "error_code": "forbidden",
                "error_message": f"{action} on {resource or '*'}",
            },
        )
        raise AuthError(f"Not allowed to perform {action}")


def build_policy(config: Config) -> AccessPolicy:
    if config.rbac_enforce:
        return RbacPolicy(config.control_root_uri())
    return AllowAllPolicy()
