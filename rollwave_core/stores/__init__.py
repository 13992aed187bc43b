from rollwave_core.stores.interfaces import (
    DistributionStore,
    RolloutStore,
    TargetStore,
)
from rollwave_core.stores.registry import get_rollout_store
from rollwave_core.stores.sqlite_store import SqliteRolloutStore

__all__ = [
    "DistributionStore",
    "RolloutStore",
    "SqliteRolloutStore",
    "TargetStore",
    "get_rollout_store",
]
