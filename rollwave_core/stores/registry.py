from __future__ import annotations

from rollwave_core.config import Config, get_config
from rollwave_core.stores.interfaces import RolloutStore
from rollwave_core.stores.sqlite_store import SqliteRolloutStore


def get_rollout_store(config: Config | None = None) -> RolloutStore:
    resolved = config or get_config()
    backend = resolved.store_backend
    if backend != "sqlite":
        raise ValueError(f"Unsupported rollout store backend: {backend}")
    return SqliteRolloutStore(resolved.database_path())
