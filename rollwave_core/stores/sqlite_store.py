from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from rollwave_core.errors import NotFoundError, RecoverableError, ValidationError
from rollwave_core.rollouts.types import (
    ACTION_CANCELED,
    ACTION_CANCELING,
    ACTION_OPEN_STATUSES,
    ACTION_RUNNING,
    ACTION_TERMINAL_STATUSES,
    DEFAULT_SUCCESS_CONDITION,
    GROUP_RUNNING,
    ROLLOUT_PAUSED,
    ROLLOUT_RUNNING,
    ROLLOUT_STOPPED,
    Action,
    ActionStatusEntry,
    AssignBatch,
    Condition,
    Distribution,
    Rollout,
    RolloutGroup,
    Target,
)
from rollwave_core.targeting.filters import combine_filters

# Keeps IN (...) lists below the SQLite host parameter limit on older builds.
_IN_CHUNK = 400

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS targets (
        id TEXT PRIMARY KEY,
        controller_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS target_tags (
        target_id TEXT NOT NULL,
        tag TEXT NOT NULL,
        PRIMARY KEY (target_id, tag)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS target_attributes (
        target_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        PRIMARY KEY (target_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS distributions (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        version TEXT NOT NULL,
        modules TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (name, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rollouts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        distribution_id TEXT NOT NULL,
        target_filter TEXT NOT NULL,
        status TEXT NOT NULL,
        action_type TEXT NOT NULL,
        forced_time TEXT,
        start_at TEXT,
        total_targets INTEGER NOT NULL DEFAULT 0,
        status_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        created_by TEXT,
        updated_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rollouts_status ON rollouts (status)",
    """
    CREATE TABLE IF NOT EXISTS rollout_groups (
        id TEXT PRIMARY KEY,
        rollout_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        parent_id TEXT,
        target_filter TEXT,
        target_percentage REAL NOT NULL,
        status TEXT NOT NULL,
        success_kind TEXT NOT NULL,
        success_threshold INTEGER NOT NULL,
        error_kind TEXT,
        error_threshold INTEGER,
        error_action TEXT NOT NULL,
        target_count INTEGER NOT NULL DEFAULT 0,
        error_triggered_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (rollout_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rollout_target_groups (
        rollout_id TEXT NOT NULL,
        group_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        assigned_at TEXT NOT NULL,
        PRIMARY KEY (rollout_id, target_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_rollout_target_groups_group
    ON rollout_target_groups (group_id, target_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS actions (
        id TEXT PRIMARY KEY,
        target_id TEXT NOT NULL,
        distribution_id TEXT NOT NULL,
        rollout_id TEXT,
        group_id TEXT,
        status TEXT NOT NULL,
        active INTEGER NOT NULL,
        action_type TEXT NOT NULL,
        forced_time TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_actions_active_target
    ON actions (target_id) WHERE active = 1
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_actions_group_target
    ON actions (group_id, target_id) WHERE group_id IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_actions_rollout ON actions (rollout_id, status)",
    """
    CREATE TABLE IF NOT EXISTS action_status (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        action_id TEXT NOT NULL,
        status TEXT NOT NULL,
        message TEXT,
        reported_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_action_status_action ON action_status (action_id)",
    """
    CREATE TABLE IF NOT EXISTS locks (
        name TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _placeholders(values: Sequence[object]) -> str:
    return ", ".join("?" for _ in values)


def _chunks(values: Sequence[str], size: int = _IN_CHUNK) -> Iterator[Sequence[str]]:
    for idx in range(0, len(values), size):
        yield values[idx : idx + size]


@dataclass(frozen=True)
class SqliteRolloutStore:
    path: str

    def __post_init__(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._session() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _session(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RecoverableError(f"SQLite rollout store failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Targets

    def register_target(
        self,
        *,
        controller_id: str,
        name: str | None = None,
        attributes: dict[str, str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> Target:
        controller = (controller_id or "").strip()
        if not controller:
            raise ValidationError("controller_id is required")
        now = _now()
        target = Target(
            id=str(uuid.uuid4()),
            controller_id=controller,
            name=(name or controller).strip(),
            attributes={str(k): str(v) for k, v in (attributes or {}).items()},
            tags=_normalize_tags(tags),
            created_at=now,
            updated_at=now,
        )
        with self._session(write=True) as conn:
            existing = conn.execute(
                "SELECT id FROM targets WHERE controller_id = ?",
                (controller,),
            ).fetchone()
            if existing:
                raise ValidationError(f"Target already registered: {controller}")
            conn.execute(
                """
                INSERT INTO targets (id, controller_id, name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (target.id, target.controller_id, target.name, now, now),
            )
            conn.executemany(
                "INSERT INTO target_tags (target_id, tag) VALUES (?, ?)",
                [(target.id, tag) for tag in target.tags],
            )
            conn.executemany(
                "INSERT INTO target_attributes (target_id, key, value) VALUES (?, ?, ?)",
                [(target.id, key, value) for key, value in target.attributes.items()],
            )
        return target

    def get_target(self, target_id: str) -> Target | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM targets WHERE id = ?",
                (target_id,),
            ).fetchone()
            if row is None:
                return None
            return self._target_from_row(conn, row)

    def list_targets(
        self,
        *,
        target_filter: str | None = None,
        limit: int | None = None,
    ) -> list[Target]:
        where_sql, params = combine_filters([target_filter])
        sql = f"SELECT t.* FROM targets t WHERE {where_sql} ORDER BY t.id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._target_from_row(conn, row) for row in rows]

    def count_targets(
        self,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
    ) -> int:
        where_sql, params = self._target_where(filters, created_before)
        with self._session() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM targets t WHERE {where_sql}",
                params,
            ).fetchone()
        return int(row[0])

    def list_target_ids(
        self,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
    ) -> list[str]:
        where_sql, params = self._target_where(filters, created_before)
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT t.id FROM targets t WHERE {where_sql} ORDER BY t.id",
                params,
            ).fetchall()
        return [str(row[0]) for row in rows]

    # Distributions

    def register_distribution(
        self,
        *,
        name: str,
        version: str,
        modules: Iterable[str] | None = None,
    ) -> Distribution:
        if not name or not version:
            raise ValidationError("Distribution name and version are required")
        distribution = Distribution(
            id=str(uuid.uuid4()),
            name=name,
            version=version,
            modules=tuple(str(item) for item in (modules or ()) if str(item).strip()),
            created_at=_now(),
        )
        with self._session(write=True) as conn:
            existing = conn.execute(
                "SELECT id FROM distributions WHERE name = ? AND version = ?",
                (name, version),
            ).fetchone()
            if existing:
                raise ValidationError(f"Distribution already exists: {name}:{version}")
            conn.execute(
                """
                INSERT INTO distributions (id, name, version, modules, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    distribution.id,
                    distribution.name,
                    distribution.version,
                    json.dumps(list(distribution.modules)),
                    distribution.created_at,
                ),
            )
        return distribution

    def get_distribution(self, distribution_id: str) -> Distribution | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM distributions WHERE id = ?",
                (distribution_id,),
            ).fetchone()
        return _distribution_from_row(row) if row else None

    def list_distributions(self) -> list[Distribution]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM distributions ORDER BY created_at, id"
            ).fetchall()
        return [_distribution_from_row(row) for row in rows]

    # Rollouts and groups

    def insert_rollout(self, rollout: Rollout, groups: Sequence[RolloutGroup]) -> None:
        with self._session(write=True) as conn:
            conn.execute(
                """
                INSERT INTO rollouts (
                    id, name, description, distribution_id, target_filter, status,
                    action_type, forced_time, start_at, total_targets, status_reason,
                    created_at, updated_at, created_by, updated_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rollout.id,
                    rollout.name,
                    rollout.description,
                    rollout.distribution_id,
                    rollout.target_filter,
                    rollout.status,
                    rollout.action_type,
                    rollout.forced_time,
                    rollout.start_at,
                    rollout.total_targets,
                    rollout.status_reason,
                    rollout.created_at,
                    rollout.updated_at,
                    rollout.created_by,
                    rollout.updated_by,
                ),
            )
            conn.executemany(
                """
                INSERT INTO rollout_groups (
                    id, rollout_id, position, name, description, parent_id,
                    target_filter, target_percentage, status, success_kind,
                    success_threshold, error_kind, error_threshold, error_action,
                    target_count, error_triggered_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        group.id,
                        group.rollout_id,
                        group.position,
                        group.name,
                        group.description,
                        group.parent_id,
                        group.target_filter,
                        group.target_percentage,
                        group.status,
                        group.success_condition.kind,
                        group.success_condition.threshold,
                        group.error_condition.kind if group.error_condition else None,
                        (
                            group.error_condition.threshold
                            if group.error_condition
                            else None
                        ),
                        group.error_action,
                        group.target_count,
                        group.error_triggered_at,
                        group.created_at,
                        group.updated_at,
                    )
                    for group in groups
                ],
            )

    def get_rollout(self, rollout_id: str) -> Rollout | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM rollouts WHERE id = ?",
                (rollout_id,),
            ).fetchone()
        return _rollout_from_row(row) if row else None

    def list_rollouts(self, statuses: Iterable[str] | None = None) -> list[Rollout]:
        sql = "SELECT * FROM rollouts"
        params: list[object] = []
        if statuses is not None:
            wanted = list(statuses)
            if not wanted:
                return []
            sql += f" WHERE status IN ({_placeholders(wanted)})"
            params.extend(wanted)
        sql += " ORDER BY created_at, id"
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_rollout_from_row(row) for row in rows]

    def update_rollout_status(
        self,
        rollout_id: str,
        *,
        expected: Iterable[str],
        status: str,
        reason: str | None = None,
        updated_by: str | None = None,
        total_targets: int | None = None,
    ) -> bool:
        sources = list(expected)
        assignments = ["status = ?", "status_reason = ?", "updated_at = ?"]
        params: list[object] = [status, reason, _now()]
        if updated_by is not None:
            assignments.append("updated_by = ?")
            params.append(updated_by)
        if total_targets is not None:
            assignments.append("total_targets = ?")
            params.append(int(total_targets))
        params.append(rollout_id)
        params.extend(sources)
        with self._session(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE rollouts SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({_placeholders(sources)})",
                params,
            )
            return cursor.rowcount == 1

    def stop_rollout(
        self,
        rollout_id: str,
        *,
        expected: Iterable[str],
        updated_by: str | None = None,
        reason: str | None = None,
    ) -> int | None:
        """Stop the rollout and flag its open actions CANCELING atomically.

        Returns the number of actions switched, or None when the rollout was
        not in one of the expected statuses.
        """
        sources = list(expected)
        cancelable = [
            status for status in ACTION_OPEN_STATUSES if status != ACTION_CANCELING
        ]
        now = _now()
        with self._session(write=True) as conn:
            cursor = conn.execute(
                f"""
                UPDATE rollouts
                SET status = ?, status_reason = ?, updated_at = ?,
                    updated_by = COALESCE(?, updated_by)
                WHERE id = ? AND status IN ({_placeholders(sources)})
                """,
                [ROLLOUT_STOPPED, reason, now, updated_by, rollout_id, *sources],
            )
            if cursor.rowcount != 1:
                return None
            return self._transition_actions(
                conn,
                rollout_id=rollout_id,
                group_id=None,
                from_statuses=cancelable,
                to_status=ACTION_CANCELING,
                message=reason or "Rollout stopped",
                now=now,
            )

    def list_groups(self, rollout_id: str) -> list[RolloutGroup]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM rollout_groups WHERE rollout_id = ? ORDER BY position",
                (rollout_id,),
            ).fetchall()
        return [_group_from_row(row) for row in rows]

    def get_group(self, group_id: str) -> RolloutGroup | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM rollout_groups WHERE id = ?",
                (group_id,),
            ).fetchone()
        return _group_from_row(row) if row else None

    def update_group_status(
        self,
        group_id: str,
        *,
        expected: Iterable[str],
        status: str,
        target_count: int | None = None,
    ) -> bool:
        sources = list(expected)
        assignments = ["status = ?", "updated_at = ?"]
        params: list[object] = [status, _now()]
        if target_count is not None:
            assignments.append("target_count = ?")
            params.append(int(target_count))
        params.append(group_id)
        params.extend(sources)
        with self._session(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE rollout_groups SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({_placeholders(sources)})",
                params,
            )
            return cursor.rowcount == 1

    def mark_group_error_triggered(self, group_id: str, *, triggered_at: str) -> bool:
        with self._session(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE rollout_groups SET error_triggered_at = ?, updated_at = ?
                WHERE id = ? AND error_triggered_at IS NULL
                """,
                (triggered_at, _now(), group_id),
            )
            return cursor.rowcount == 1

    def pause_for_group_error(
        self,
        rollout_id: str,
        group_id: str,
        *,
        triggered_at: str,
        reason: str,
    ) -> bool:
        now = _now()
        with self._session(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE rollouts SET status = ?, status_reason = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (ROLLOUT_PAUSED, reason, now, rollout_id, ROLLOUT_RUNNING),
            )
            if cursor.rowcount != 1:
                return False
            conn.execute(
                """
                UPDATE rollout_groups SET error_triggered_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND error_triggered_at IS NULL
                """,
                (triggered_at, now, group_id, GROUP_RUNNING),
            )
            return True

    # Group membership

    def count_group_candidates(
        self,
        rollout_id: str,
        group_id: str,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
    ) -> int:
        where_sql, params = self._target_where(filters, created_before)
        with self._session() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) FROM targets t
                WHERE {where_sql}
                AND NOT EXISTS (
                    SELECT 1 FROM rollout_target_groups r
                    WHERE r.rollout_id = ? AND r.target_id = t.id AND r.group_id != ?
                )
                """,
                [*params, rollout_id, group_id],
            ).fetchone()
        return int(row[0])

    def assign_targets_to_group(
        self,
        rollout_id: str,
        group_id: str,
        filters: Sequence[str | None],
        *,
        created_before: str | None = None,
        limit: int,
    ) -> int:
        where_sql, params = self._target_where(filters, created_before)
        with self._session(write=True) as conn:
            cursor = conn.execute(
                f"""
                INSERT OR IGNORE INTO rollout_target_groups (
                    rollout_id, group_id, target_id, assigned_at
                )
                SELECT ?, ?, t.id, ? FROM targets t
                WHERE {where_sql}
                AND NOT EXISTS (
                    SELECT 1 FROM rollout_target_groups r
                    WHERE r.rollout_id = ? AND r.target_id = t.id
                )
                ORDER BY t.id
                LIMIT ?
                """,
                [rollout_id, group_id, _now(), *params, rollout_id, int(limit)],
            )
            return max(cursor.rowcount, 0)

    def count_group_targets(self, group_id: str) -> int:
        with self._session() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM rollout_target_groups WHERE group_id = ?",
                (group_id,),
            ).fetchone()
        return int(row[0])

    def count_rollout_targets(self, rollout_id: str) -> int:
        with self._session() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM rollout_target_groups WHERE rollout_id = ?",
                (rollout_id,),
            ).fetchone()
        return int(row[0])

    def list_group_target_ids(self, group_id: str) -> list[str]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT target_id FROM rollout_target_groups
                WHERE group_id = ? ORDER BY target_id
                """,
                (group_id,),
            ).fetchall()
        return [str(row[0]) for row in rows]

    # Actions

    def create_group_actions(
        self,
        *,
        rollout_id: str,
        group_id: str,
        distribution_id: str,
        action_type: str,
        forced_time: str | None,
        limit: int,
        allowed_rollout_statuses: Iterable[str],
    ) -> AssignBatch:
        allowed = set(allowed_rollout_statuses)
        now = _now()
        with self._session(write=True) as conn:
            row = conn.execute(
                "SELECT status FROM rollouts WHERE id = ?",
                (rollout_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Rollout not found: {rollout_id}")
            if row["status"] not in allowed:
                return AssignBatch(created=0, canceled=0, aborted=True)

            rows = conn.execute(
                """
                SELECT r.target_id FROM rollout_target_groups r
                WHERE r.group_id = ?
                AND NOT EXISTS (
                    SELECT 1 FROM actions a
                    WHERE a.group_id = r.group_id AND a.target_id = r.target_id
                )
                ORDER BY r.target_id
                LIMIT ?
                """,
                (group_id, int(limit)),
            ).fetchall()
            target_ids = [str(item[0]) for item in rows]
            if not target_ids:
                return AssignBatch(created=0, canceled=0)

            canceled = 0
            for chunk in _chunks(target_ids):
                canceled += self._cancel_active_actions(
                    conn,
                    chunk,
                    message=f"Superseded by rollout {rollout_id}",
                    now=now,
                )

            new_actions = [
                (
                    str(uuid.uuid4()),
                    target_id,
                    distribution_id,
                    rollout_id,
                    group_id,
                    ACTION_RUNNING,
                    1,
                    action_type,
                    forced_time,
                    now,
                    now,
                )
                for target_id in target_ids
            ]
            conn.executemany(
                """
                INSERT INTO actions (
                    id, target_id, distribution_id, rollout_id, group_id, status,
                    active, action_type, forced_time, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                new_actions,
            )
            conn.executemany(
                """
                INSERT INTO action_status (action_id, status, message, reported_at)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (item[0], ACTION_RUNNING, "Assigned by rollout", now)
                    for item in new_actions
                ],
            )
            return AssignBatch(created=len(new_actions), canceled=canceled)

    def create_manual_action(
        self,
        *,
        target_id: str,
        distribution_id: str,
        action_type: str,
        forced_time: str | None = None,
    ) -> Action:
        now = _now()
        action_id = str(uuid.uuid4())
        with self._session(write=True) as conn:
            exists = conn.execute(
                "SELECT 1 FROM targets WHERE id = ?",
                (target_id,),
            ).fetchone()
            if not exists:
                raise NotFoundError(f"Target not found: {target_id}")
            self._cancel_active_actions(
                conn,
                [target_id],
                message="Superseded by manual assignment",
                now=now,
            )
            conn.execute(
                """
                INSERT INTO actions (
                    id, target_id, distribution_id, rollout_id, group_id, status,
                    active, action_type, forced_time, created_at, updated_at
                ) VALUES (?, ?, ?, NULL, NULL, ?, 1, ?, ?, ?, ?)
                """,
                (
                    action_id,
                    target_id,
                    distribution_id,
                    ACTION_RUNNING,
                    action_type,
                    forced_time,
                    now,
                    now,
                ),
            )
            conn.execute(
                """
                INSERT INTO action_status (action_id, status, message, reported_at)
                VALUES (?, ?, ?, ?)
                """,
                (action_id, ACTION_RUNNING, "Assigned manually", now),
            )
            row = conn.execute(
                "SELECT * FROM actions WHERE id = ?",
                (action_id,),
            ).fetchone()
        return _action_from_row(row)

    def get_action(self, action_id: str) -> Action | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM actions WHERE id = ?",
                (action_id,),
            ).fetchone()
        return _action_from_row(row) if row else None

    def list_actions(
        self,
        *,
        rollout_id: str | None = None,
        group_id: str | None = None,
        target_id: str | None = None,
        active: bool | None = None,
    ) -> list[Action]:
        conditions: list[str] = []
        params: list[object] = []
        if rollout_id is not None:
            conditions.append("rollout_id = ?")
            params.append(rollout_id)
        if group_id is not None:
            conditions.append("group_id = ?")
            params.append(group_id)
        if target_id is not None:
            conditions.append("target_id = ?")
            params.append(target_id)
        if active is not None:
            conditions.append("active = ?")
            params.append(1 if active else 0)
        sql = "SELECT * FROM actions"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at, target_id"
        with self._session() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_action_from_row(row) for row in rows]

    def update_action_status(
        self,
        action_id: str,
        *,
        status: str,
        message: str | None = None,
    ) -> Action | None:
        """Apply a device report; only an active action accepts one.

        A CANCELING action only moves to a terminal status.
        """
        now = _now()
        still_active = 0 if status in ACTION_TERMINAL_STATUSES else 1
        with self._session(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE actions SET status = ?, active = ?, updated_at = ?
                WHERE id = ? AND active = 1 AND (status != ? OR ? = 0)
                """,
                (status, still_active, now, action_id, ACTION_CANCELING, still_active),
            )
            if cursor.rowcount != 1:
                return None
            conn.execute(
                """
                INSERT INTO action_status (action_id, status, message, reported_at)
                VALUES (?, ?, ?, ?)
                """,
                (action_id, status, message, now),
            )
            row = conn.execute(
                "SELECT * FROM actions WHERE id = ?",
                (action_id,),
            ).fetchone()
        return _action_from_row(row)

    def transition_actions(
        self,
        *,
        rollout_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        group_id: str | None = None,
        message: str | None = None,
    ) -> int:
        with self._session(write=True) as conn:
            return self._transition_actions(
                conn,
                rollout_id=rollout_id,
                group_id=group_id,
                from_statuses=list(from_statuses),
                to_status=to_status,
                message=message,
                now=_now(),
            )

    def action_history(self, action_id: str) -> list[ActionStatusEntry]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM action_status WHERE action_id = ? ORDER BY id",
                (action_id,),
            ).fetchall()
        return [
            ActionStatusEntry(
                id=int(row["id"]),
                action_id=str(row["action_id"]),
                status=str(row["status"]),
                message=row["message"],
                reported_at=str(row["reported_at"]),
            )
            for row in rows
        ]

    def count_actions_by_status(
        self,
        *,
        rollout_id: str | None = None,
        group_id: str | None = None,
    ) -> dict[str, int]:
        if group_id is not None:
            column, value = "group_id", group_id
        elif rollout_id is not None:
            column, value = "rollout_id", rollout_id
        else:
            raise ValueError("rollout_id or group_id is required")
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT status, COUNT(*) FROM actions WHERE {column} = ? "
                "GROUP BY status",
                (value,),
            ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # Locks

    def acquire_lock(self, name: str, *, owner: str, ttl_seconds: int) -> bool:
        now = datetime.now(timezone.utc)
        now_text = now.isoformat(timespec="microseconds")
        expires_at = (now + timedelta(seconds=ttl_seconds)).isoformat(
            timespec="microseconds"
        )
        with self._session(write=True) as conn:
            row = conn.execute(
                "SELECT owner, expires_at FROM locks WHERE name = ?",
                (name,),
            ).fetchone()
            if row is not None and str(row["expires_at"]) > now_text:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO locks (name, owner, expires_at) VALUES (?, ?, ?)",
                (name, owner, expires_at),
            )
            return True

    def renew_lock(self, name: str, *, owner: str, ttl_seconds: int) -> bool:
        """Push the expiry out; False once another owner has taken the lease."""
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        ).isoformat(timespec="microseconds")
        with self._session(write=True) as conn:
            cursor = conn.execute(
                "UPDATE locks SET expires_at = ? WHERE name = ? AND owner = ?",
                (expires_at, name, owner),
            )
            return cursor.rowcount == 1

    def release_lock(self, name: str, *, owner: str) -> None:
        with self._session(write=True) as conn:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND owner = ?",
                (name, owner),
            )

    # Internals

    def _target_where(
        self,
        filters: Sequence[str | None],
        created_before: str | None,
    ) -> tuple[str, list[object]]:
        where_sql, params = combine_filters(filters)
        if created_before is not None:
            where_sql = f"{where_sql} AND t.created_at <= ?"
            params.append(created_before)
        return where_sql, params

    def _target_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Target:
        tags = conn.execute(
            "SELECT tag FROM target_tags WHERE target_id = ? ORDER BY tag",
            (row["id"],),
        ).fetchall()
        attributes = conn.execute(
            "SELECT key, value FROM target_attributes WHERE target_id = ?",
            (row["id"],),
        ).fetchall()
        return Target(
            id=str(row["id"]),
            controller_id=str(row["controller_id"]),
            name=str(row["name"]),
            attributes={str(item[0]): str(item[1]) for item in attributes},
            tags=tuple(str(item[0]) for item in tags),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def _cancel_active_actions(
        self,
        conn: sqlite3.Connection,
        target_ids: Sequence[str],
        *,
        message: str,
        now: str,
    ) -> int:
        rows = conn.execute(
            f"""
            SELECT id FROM actions
            WHERE active = 1 AND target_id IN ({_placeholders(target_ids)})
            """,
            list(target_ids),
        ).fetchall()
        action_ids = [str(row[0]) for row in rows]
        if not action_ids:
            return 0
        conn.execute(
            f"""
            UPDATE actions SET status = ?, active = 0, updated_at = ?
            WHERE id IN ({_placeholders(action_ids)})
            """,
            [ACTION_CANCELED, now, *action_ids],
        )
        conn.executemany(
            """
            INSERT INTO action_status (action_id, status, message, reported_at)
            VALUES (?, ?, ?, ?)
            """,
            [(action_id, ACTION_CANCELED, message, now) for action_id in action_ids],
        )
        return len(action_ids)

    def _transition_actions(
        self,
        conn: sqlite3.Connection,
        *,
        rollout_id: str,
        group_id: str | None,
        from_statuses: Sequence[str],
        to_status: str,
        message: str | None,
        now: str,
    ) -> int:
        if not from_statuses:
            return 0
        conditions = [
            "rollout_id = ?",
            "active = 1",
            f"status IN ({_placeholders(from_statuses)})",
        ]
        params: list[object] = [rollout_id, *from_statuses]
        if group_id is not None:
            conditions.append("group_id = ?")
            params.append(group_id)
        where_sql = " AND ".join(conditions)
        conn.execute(
            f"""
            INSERT INTO action_status (action_id, status, message, reported_at)
            SELECT id, ?, ?, ? FROM actions WHERE {where_sql}
            """,
            [to_status, message, now, *params],
        )
        still_active = 0 if to_status in ACTION_TERMINAL_STATUSES else 1
        cursor = conn.execute(
            f"""
            UPDATE actions SET status = ?, active = ?, updated_at = ?
            WHERE {where_sql}
            """,
            [to_status, still_active, now, *params],
        )
        return cursor.rowcount


def _normalize_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    if not tags:
        return ()
    cleaned: list[str] = []
    for tag in tags:
        value = str(tag).strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return tuple(sorted(cleaned))


def _condition(kind: object, threshold: object) -> Condition | None:
    if kind is None or threshold is None:
        return None
    return Condition(kind=str(kind), threshold=int(threshold))


def _distribution_from_row(row: sqlite3.Row) -> Distribution:
    modules = json.loads(row["modules"] or "[]")
    return Distribution(
        id=str(row["id"]),
        name=str(row["name"]),
        version=str(row["version"]),
        modules=tuple(str(item) for item in modules),
        created_at=str(row["created_at"]),
    )


def _rollout_from_row(row: sqlite3.Row) -> Rollout:
    return Rollout(
        id=str(row["id"]),
        name=str(row["name"]),
        description=row["description"],
        distribution_id=str(row["distribution_id"]),
        target_filter=str(row["target_filter"]),
        status=str(row["status"]),
        action_type=str(row["action_type"]),
        forced_time=row["forced_time"],
        start_at=row["start_at"],
        total_targets=int(row["total_targets"] or 0),
        status_reason=row["status_reason"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        created_by=row["created_by"],
        updated_by=row["updated_by"],
    )


def _group_from_row(row: sqlite3.Row) -> RolloutGroup:
    success = _condition(row["success_kind"], row["success_threshold"])
    return RolloutGroup(
        id=str(row["id"]),
        rollout_id=str(row["rollout_id"]),
        position=int(row["position"]),
        name=str(row["name"]),
        description=row["description"],
        parent_id=row["parent_id"],
        target_filter=row["target_filter"],
        target_percentage=float(row["target_percentage"]),
        status=str(row["status"]),
        success_condition=success or DEFAULT_SUCCESS_CONDITION,
        error_condition=_condition(row["error_kind"], row["error_threshold"]),
        error_action=str(row["error_action"]),
        target_count=int(row["target_count"] or 0),
        error_triggered_at=row["error_triggered_at"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _action_from_row(row: sqlite3.Row) -> Action:
    return Action(
        id=str(row["id"]),
        target_id=str(row["target_id"]),
        distribution_id=str(row["distribution_id"]),
        rollout_id=row["rollout_id"],
        group_id=row["group_id"],
        status=str(row["status"]),
        active=bool(row["active"]),
        action_type=str(row["action_type"]),
        forced_time=row["forced_time"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )
