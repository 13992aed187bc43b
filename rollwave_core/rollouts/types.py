from __future__ import annotations

from dataclasses import dataclass, field

ROLLOUT_CREATING = "CREATING"
ROLLOUT_READY = "READY"
ROLLOUT_STARTING = "STARTING"
ROLLOUT_RUNNING = "RUNNING"
ROLLOUT_PAUSED = "PAUSED"
ROLLOUT_FINISHED = "FINISHED"
ROLLOUT_STOPPED = "STOPPED"
ROLLOUT_ERROR_CREATING = "ERROR_CREATING"
ROLLOUT_ERROR_STARTING = "ERROR_STARTING"

ROLLOUT_STATUSES = (
    ROLLOUT_CREATING,
    ROLLOUT_READY,
    ROLLOUT_STARTING,
    ROLLOUT_RUNNING,
    ROLLOUT_PAUSED,
    ROLLOUT_FINISHED,
    ROLLOUT_STOPPED,
    ROLLOUT_ERROR_CREATING,
    ROLLOUT_ERROR_STARTING,
)
ROLLOUT_TERMINAL_STATUSES = (
    ROLLOUT_FINISHED,
    ROLLOUT_STOPPED,
    ROLLOUT_ERROR_CREATING,
    ROLLOUT_ERROR_STARTING,
)
ROLLOUT_ACTIVE_STATUSES = (
    ROLLOUT_CREATING,
    ROLLOUT_READY,
    ROLLOUT_STARTING,
    ROLLOUT_RUNNING,
)

GROUP_CREATING = "CREATING"
GROUP_SCHEDULED = "SCHEDULED"
GROUP_RUNNING = "RUNNING"
GROUP_FINISHED = "FINISHED"
GROUP_ERROR = "ERROR"

GROUP_STATUSES = (
    GROUP_CREATING,
    GROUP_SCHEDULED,
    GROUP_RUNNING,
    GROUP_FINISHED,
    GROUP_ERROR,
)

ACTION_RUNNING = "RUNNING"
ACTION_SCHEDULED = "SCHEDULED"
ACTION_CANCELING = "CANCELING"
ACTION_CANCELED = "CANCELED"
ACTION_ERROR = "ERROR"
ACTION_FINISHED = "FINISHED"
ACTION_WARNING = "WARNING"
ACTION_DOWNLOAD = "DOWNLOAD"
ACTION_RETRIEVED = "RETRIEVED"

ACTION_STATUSES = (
    ACTION_RUNNING,
    ACTION_SCHEDULED,
    ACTION_CANCELING,
    ACTION_CANCELED,
    ACTION_ERROR,
    ACTION_FINISHED,
    ACTION_WARNING,
    ACTION_DOWNLOAD,
    ACTION_RETRIEVED,
)
ACTION_TERMINAL_STATUSES = (ACTION_FINISHED, ACTION_ERROR, ACTION_CANCELED)
ACTION_OPEN_STATUSES = tuple(
    status for status in ACTION_STATUSES if status not in ACTION_TERMINAL_STATUSES
)

ACTION_TYPE_FORCED = "forced"
ACTION_TYPE_SOFT = "soft"
ACTION_TYPE_TIMEFORCED = "timeforced"
ACTION_TYPES = (ACTION_TYPE_FORCED, ACTION_TYPE_SOFT, ACTION_TYPE_TIMEFORCED)

CONDITION_PERCENTAGE = "percentage"
CONDITION_COUNT = "count"
CONDITION_KINDS = (CONDITION_PERCENTAGE, CONDITION_COUNT)

ERROR_ACTION_PAUSE = "PAUSE"
ERROR_ACTION_NONE = "NONE"
ERROR_ACTIONS = (ERROR_ACTION_PAUSE, ERROR_ACTION_NONE)


@dataclass(frozen=True)
class Target:
    id: str
    controller_id: str
    name: str
    attributes: dict[str, str]
    tags: tuple[str, ...]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Distribution:
    id: str
    name: str
    version: str
    modules: tuple[str, ...]
    created_at: str

    def is_complete(self) -> bool:
        return bool(self.modules)


@dataclass(frozen=True)
class Condition:
    kind: str
    threshold: int

    def describe(self) -> str:
        if self.kind == CONDITION_PERCENTAGE:
            return f"{self.threshold}%"
        return str(self.threshold)


DEFAULT_SUCCESS_CONDITION = Condition(kind=CONDITION_PERCENTAGE, threshold=100)


@dataclass(frozen=True)
class GroupDefinition:
    name: str | None = None
    description: str | None = None
    target_filter: str | None = None
    target_percentage: float = 100.0
    success_condition: Condition = DEFAULT_SUCCESS_CONDITION
    error_condition: Condition | None = None
    error_action: str = ERROR_ACTION_PAUSE


@dataclass(frozen=True)
class GroupingSpec:
    """Either ``amount`` equal groups or an explicit ordered group list.

    With ``amount`` every group shares the same conditions and takes an equal
    share of the remaining targets.
    """

    amount: int | None = None
    groups: tuple[GroupDefinition, ...] = ()
    success_condition: Condition = DEFAULT_SUCCESS_CONDITION
    error_condition: Condition | None = None
    error_action: str = ERROR_ACTION_PAUSE


@dataclass(frozen=True)
class Rollout:
    id: str
    name: str
    description: str | None
    distribution_id: str
    target_filter: str
    status: str
    action_type: str
    forced_time: str | None
    start_at: str | None
    total_targets: int
    status_reason: str | None
    created_at: str
    updated_at: str
    created_by: str | None = None
    updated_by: str | None = None


@dataclass(frozen=True)
class RolloutGroup:
    id: str
    rollout_id: str
    position: int
    name: str
    description: str | None
    parent_id: str | None
    target_filter: str | None
    target_percentage: float
    status: str
    success_condition: Condition
    error_condition: Condition | None
    error_action: str
    target_count: int
    error_triggered_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Action:
    id: str
    target_id: str
    distribution_id: str
    rollout_id: str | None
    group_id: str | None
    status: str
    active: bool
    action_type: str
    forced_time: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class ActionStatusEntry:
    id: int
    action_id: str
    status: str
    message: str | None
    reported_at: str


@dataclass(frozen=True)
class StatusCounts:
    total: int = 0
    running: int = 0
    scheduled: int = 0
    error: int = 0
    finished: int = 0
    cancelled: int = 0
    not_started: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "running": self.running,
            "scheduled": self.scheduled,
            "error": self.error,
            "finished": self.finished,
            "cancelled": self.cancelled,
            "not_started": self.not_started,
        }


@dataclass(frozen=True)
class GroupStatusView:
    group: RolloutGroup
    counts: StatusCounts


@dataclass(frozen=True)
class RolloutStatusView:
    rollout: Rollout
    counts: StatusCounts
    groups: tuple[GroupStatusView, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AssignBatch:
    created: int
    canceled: int
    aborted: bool = False
