from __future__ import annotations

import os
from pathlib import Path
from typing import Callable

import pytest

from rollwave_core.config import Config, get_config
from rollwave_core.notifications import RecordingNotifier
from rollwave_core.rollouts.management import RolloutManagement
from rollwave_core.rollouts.types import Distribution, Target
from rollwave_core.stores import SqliteRolloutStore


@pytest.fixture(autouse=True)
def _rollwave_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    def set_default(name: str, value: str) -> None:
        if not os.getenv(name):
            monkeypatch.setenv(name, value)

    monkeypatch.setenv("CONTROL_ROOT", (tmp_path / "control").as_posix())
    monkeypatch.setenv("ROLLWAVE_DB_PATH", (tmp_path / "rollwave.db").as_posix())
    monkeypatch.delenv("ROLLWAVE_API_KEY", raising=False)
    set_default("ENV", "test")
    set_default("LOG_LEVEL", "INFO")
    set_default("SCHEDULER_ENABLED", "0")
    set_default("WEBHOOKS_ENABLED", "0")
    set_default("RBAC_ENFORCE", "0")
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def config() -> Config:
    return get_config()


@pytest.fixture
def store(config: Config) -> SqliteRolloutStore:
    return SqliteRolloutStore(path=config.database_path())


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def management(
    store: SqliteRolloutStore,
    config: Config,
    notifier: RecordingNotifier,
) -> RolloutManagement:
    return RolloutManagement(store, config=config, notifier=notifier)


@pytest.fixture
def register_targets(store: SqliteRolloutStore) -> Callable[..., list[Target]]:
    def _register(
        count: int,
        *,
        prefix: str = "edge",
        tags: list[str] | None = None,
        attributes: dict[str, str] | None = None,
    ) -> list[Target]:
        return [
            store.register_target(
                controller_id=f"{prefix}-{idx:03d}",
                tags=tags,
                attributes=attributes,
            )
            for idx in range(count)
        ]

    return _register


@pytest.fixture
def distribution(store: SqliteRolloutStore) -> Distribution:
    return store.register_distribution(
        name="firmware",
        version="2.4.0",
        modules=["os", "bootloader"],
    )
