from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ApiKey:
    id: str
    name: str
    key_hash: str
    enabled: bool
    is_admin: bool
    roles: tuple[str, ...] | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class AuthContext:
    principal_id: str
    is_admin: bool = False
    actor_type: str = "api_key"
    roles: tuple[str, ...] | None = None

    @property
    def actor(self) -> str:
        return f"{self.actor_type}:{self.principal_id}"
