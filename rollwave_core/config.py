import os
from dataclasses import dataclass
from functools import lru_cache

from rollwave_core.storage.paths import join_uri

THRESHOLD_ROUNDING_MODES = ("truncate", "half_up")
ERROR_ACTION_NONE_MODES = ("informational", "halt")


@dataclass(frozen=True)
class Config:
    env: str
    log_level: str
    store_backend: str
    db_path: str
    control_root: str
    scheduler_enabled: bool
    scheduler_interval_seconds: int
    scheduler_workers: int
    rollout_lock_ttl_seconds: int
    assign_batch_size: int
    max_groups_per_rollout: int
    max_targets_per_group: int
    threshold_rounding: str
    error_action_none_mode: str
    webhooks_enabled: bool
    webhook_timeout_s: float
    webhook_max_attempts: int
    rbac_enforce: bool

    def control_root_uri(self) -> str:
        return self.control_root

    def database_path(self) -> str:
        return self.db_path

    @classmethod
    def from_env(cls) -> "Config":
        def read_int(name: str, default: int, minimum: int = 0) -> int:
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = int(raw)
            except ValueError as exc:
                raise ValueError(f"{name} must be an integer") from exc
            if value < minimum:
                raise ValueError(f"{name} must be >= {minimum}")
            return value

        def read_float(name: str, default: float) -> float:
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return float(raw)
            except ValueError as exc:
                raise ValueError(f"{name} must be a number") from exc

        def read_choice(name: str, default: str, allowed: tuple[str, ...]) -> str:
            value = os.getenv(name, default).strip().lower()
            if value not in allowed:
                raise ValueError(f"{name} must be one of: {', '.join(allowed)}")
            return value

        env = os.getenv("ENV", "dev")
        store_backend = read_choice("STORE_BACKEND", "sqlite", ("sqlite",))
        control_root = os.getenv("CONTROL_ROOT", "./rollwave_data")
        db_path = os.getenv("ROLLWAVE_DB_PATH") or join_uri(
            control_root, "rollwave.db"
        )
        max_groups = read_int("MAX_GROUPS_PER_ROLLOUT", 500, minimum=1)

        return cls(
            env=env,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            store_backend=store_backend,
            db_path=db_path,
            control_root=control_root,
            scheduler_enabled=_parse_bool(os.getenv("SCHEDULER_ENABLED", "0")),
            scheduler_interval_seconds=read_int(
                "SCHEDULER_INTERVAL_SECONDS", 10, minimum=1
            ),
            scheduler_workers=read_int("SCHEDULER_WORKERS", 4, minimum=1),
            rollout_lock_ttl_seconds=read_int(
                "ROLLOUT_LOCK_TTL_SECONDS", 60, minimum=1
            ),
            assign_batch_size=read_int("ASSIGN_BATCH_SIZE", 5000, minimum=1),
            max_groups_per_rollout=max_groups,
            max_targets_per_group=read_int("MAX_TARGETS_PER_GROUP", 0),
            threshold_rounding=read_choice(
                "THRESHOLD_ROUNDING", "truncate", THRESHOLD_ROUNDING_MODES
            ),
            error_action_none_mode=read_choice(
                "ERROR_ACTION_NONE_MODE", "informational", ERROR_ACTION_NONE_MODES
            ),
            webhooks_enabled=_parse_bool(os.getenv("WEBHOOKS_ENABLED", "0")),
            webhook_timeout_s=read_float("WEBHOOK_TIMEOUT_S", 10.0),
            webhook_max_attempts=read_int("WEBHOOK_MAX_ATTEMPTS", 3, minimum=1),
            rbac_enforce=_parse_bool(os.getenv("RBAC_ENFORCE", "0")),
        )


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
