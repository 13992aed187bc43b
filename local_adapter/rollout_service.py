from __future__ import annotations

import os
import uuid
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Iterator

from fastapi import FastAPI, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from rollwave_core.auth import (
    ACTION_ROLLOUTS_HANDLE,
    ACTION_ROLLOUTS_READ,
    ACTION_ROLLOUTS_TICK,
    AuthContext,
    authorize_api_key,
    build_policy,
)
from rollwave_core.config import Config, get_config
from rollwave_core.errors import (
    AuthError,
    NotFoundError,
    RecoverableError,
    RollwaveError,
    StateConflictError,
    ValidationError,
)
from rollwave_core.logging import configure_logging, get_logger
from rollwave_core.notifications import (
    EVENT_TYPES,
    WebhookRegistration,
    build_notifier,
    delete_webhook,
    load_webhooks,
    register_webhook,
)
from rollwave_core.rollouts.conditions import build_condition, format_condition
from rollwave_core.rollouts.management import RolloutManagement
from rollwave_core.rollouts.scheduler import RolloutScheduler, run_scheduler_tick
from rollwave_core.rollouts.types import (
    ACTION_TYPE_FORCED,
    ERROR_ACTION_PAUSE,
    Action,
    ActionStatusEntry,
    Condition,
    Distribution,
    GroupDefinition,
    GroupingSpec,
    GroupStatusView,
    Rollout,
    RolloutGroup,
    StatusCounts,
    Target,
)
from rollwave_core.services.fastapi_scaffolding import (
    HealthResponse,
    add_request_id_middleware,
    apply_cors_middleware,
    build_health_response,
    is_local_env,
)
from rollwave_core.stores import get_rollout_store

SERVICE_NAME = "rollwave-local-rollouts"

configure_logging(
    service=SERVICE_NAME,
    env=os.getenv("ENV", "local"),
    version=os.getenv("ROLLWAVE_VERSION"),
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    config = _get_config()
    scheduler: RolloutScheduler | None = None
    if config.scheduler_enabled:
        scheduler = RolloutScheduler(get_rollout_store(config), config=config)
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


app = FastAPI(lifespan=lifespan)
apply_cors_middleware(app)
add_request_id_middleware(app)


class ConditionModel(BaseModel):
    kind: str
    threshold: int


class TargetCreateRequest(BaseModel):
    controller_id: str
    name: str | None = None
    attributes: dict[str, str] | None = None
    tags: list[str] | None = None


class TargetResponse(BaseModel):
    id: str
    controller_id: str
    name: str
    attributes: dict[str, str]
    tags: list[str]
    created_at: str
    updated_at: str


class DistributionCreateRequest(BaseModel):
    name: str
    version: str
    modules: list[str] | None = None


class DistributionResponse(BaseModel):
    id: str
    name: str
    version: str
    modules: list[str]
    created_at: str


class GroupRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    target_filter: str | None = None
    target_percentage: float = Field(default=100.0, gt=0, le=100)
    success_condition: ConditionModel | None = None
    error_condition: ConditionModel | None = None
    error_action: str = ERROR_ACTION_PAUSE


class RolloutCreateRequest(BaseModel):
    name: str
    distribution_id: str
    target_filter: str
    description: str | None = None
    amount: int | None = Field(default=None, ge=1)
    groups: list[GroupRequest] | None = None
    success_condition: ConditionModel | None = None
    error_condition: ConditionModel | None = None
    error_action: str = ERROR_ACTION_PAUSE
    action_type: str = ACTION_TYPE_FORCED
    forced_time: str | None = None
    start_at: str | None = None


class RolloutResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    distribution_id: str
    target_filter: str
    status: str
    action_type: str
    forced_time: str | None = None
    start_at: str | None = None
    total_targets: int
    status_reason: str | None = None
    created_at: str
    updated_at: str
    created_by: str | None = None
    updated_by: str | None = None


class GroupResponse(BaseModel):
    id: str
    rollout_id: str
    position: int
    name: str
    description: str | None = None
    parent_id: str | None = None
    target_filter: str | None = None
    target_percentage: float
    status: str
    success_condition: str
    error_condition: str | None = None
    error_action: str
    target_count: int
    error_triggered_at: str | None = None


class StatusCountsResponse(BaseModel):
    total: int
    running: int
    scheduled: int
    error: int
    finished: int
    cancelled: int
    not_started: int


class GroupStatusResponse(BaseModel):
    group: GroupResponse
    counts: StatusCountsResponse


class RolloutStatusResponse(BaseModel):
    rollout: RolloutResponse
    counts: StatusCountsResponse
    groups: list[GroupStatusResponse]


class StopRequest(BaseModel):
    reason: str | None = None


class TriggerResponse(BaseModel):
    group_id: str | None = None
    actions_created: int
    actions_canceled: int


class ActionResponse(BaseModel):
    id: str
    target_id: str
    distribution_id: str
    rollout_id: str | None = None
    group_id: str | None = None
    status: str
    active: bool
    action_type: str
    forced_time: str | None = None
    created_at: str
    updated_at: str


class ActionStatusRequest(BaseModel):
    status: str
    message: str | None = None


class ActionHistoryResponse(BaseModel):
    id: int
    status: str
    message: str | None = None
    reported_at: str


class AssignRequest(BaseModel):
    target_id: str
    distribution_id: str
    action_type: str = ACTION_TYPE_FORCED
    forced_time: str | None = None


class WebhookCreateRequest(BaseModel):
    name: str
    url: str
    secret: str | None = None
    event_types: list[str] | None = None
    enabled: bool = True
    headers: dict[str, str] | None = None
    timeout_s: float | None = Field(default=None, gt=0)


class WebhookResponse(BaseModel):
    id: str
    name: str
    url: str
    event_types: list[str] | None = None
    enabled: bool
    created_at: str
    updated_at: str


class TickResponse(BaseModel):
    tick_id: str
    processed: int
    skipped: int
    failed: int
    duration_ms: int


def _get_config() -> Config:
    return get_config()


def _api_key() -> str | None:
    return os.getenv("ROLLWAVE_API_KEY")


def _authorize(request: Request) -> AuthContext | None:
    raw_key = request.headers.get("x-api-key")
    try:
        return authorize_api_key(
            base_uri=_get_config().control_root_uri(),
            raw_key=raw_key,
            fallback_key=_api_key(),
            require=not is_local_env(),
        )
    except AuthError as exc:
        raise HTTPException(status_code=401, detail="Unauthorized") from exc


def _management() -> RolloutManagement:
    config = _get_config()
    return RolloutManagement(
        get_rollout_store(config),
        config=config,
        policy=build_policy(config),
        notifier=build_notifier(config),
    )


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StateConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(status_code=403, detail="Forbidden") from exc
    except RecoverableError as exc:
        logger.warning(
            "Store unavailable",
            extra={"error_code": "recoverable", "error_message": str(exc)},
        )
        raise HTTPException(status_code=503, detail="Service unavailable") from exc
    except RollwaveError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _condition(model: ConditionModel | None) -> Condition | None:
    if model is None:
        return None
    return build_condition(model.kind, model.threshold)


def _grouping(payload: RolloutCreateRequest) -> GroupingSpec:
    success = _condition(payload.success_condition)
    shared: dict[str, object] = {
        "error_condition": _condition(payload.error_condition),
        "error_action": payload.error_action,
    }
    if success is not None:
        shared["success_condition"] = success
    if payload.groups is None:
        return GroupingSpec(amount=payload.amount, **shared)
    definitions = []
    for group in payload.groups:
        group_success = _condition(group.success_condition) or success
        fields: dict[str, object] = {
            "name": group.name,
            "description": group.description,
            "target_filter": group.target_filter,
            "target_percentage": group.target_percentage,
            "error_condition": _condition(group.error_condition),
            "error_action": group.error_action,
        }
        if group_success is not None:
            fields["success_condition"] = group_success
        definitions.append(GroupDefinition(**fields))
    return GroupingSpec(amount=payload.amount, groups=tuple(definitions))


def _target_response(target: Target) -> TargetResponse:
    return TargetResponse(
        id=target.id,
        controller_id=target.controller_id,
        name=target.name,
        attributes=dict(target.attributes),
        tags=list(target.tags),
        created_at=target.created_at,
        updated_at=target.updated_at,
    )


def _distribution_response(distribution: Distribution) -> DistributionResponse:
    return DistributionResponse(
        id=distribution.id,
        name=distribution.name,
        version=distribution.version,
        modules=list(distribution.modules),
        created_at=distribution.created_at,
    )


def _rollout_response(rollout: Rollout) -> RolloutResponse:
    return RolloutResponse(
        id=rollout.id,
        name=rollout.name,
        description=rollout.description,
        distribution_id=rollout.distribution_id,
        target_filter=rollout.target_filter,
        status=rollout.status,
        action_type=rollout.action_type,
        forced_time=rollout.forced_time,
        start_at=rollout.start_at,
        total_targets=rollout.total_targets,
        status_reason=rollout.status_reason,
        created_at=rollout.created_at,
        updated_at=rollout.updated_at,
        created_by=rollout.created_by,
        updated_by=rollout.updated_by,
    )


def _group_response(group: RolloutGroup) -> GroupResponse:
    return GroupResponse(
        id=group.id,
        rollout_id=group.rollout_id,
        position=group.position,
        name=group.name,
        description=group.description,
        parent_id=group.parent_id,
        target_filter=group.target_filter,
        target_percentage=group.target_percentage,
        status=group.status,
        success_condition=format_condition(group.success_condition) or "",
        error_condition=format_condition(group.error_condition),
        error_action=group.error_action,
        target_count=group.target_count,
        error_triggered_at=group.error_triggered_at,
    )


def _counts_response(counts: StatusCounts) -> StatusCountsResponse:
    return StatusCountsResponse(**counts.to_dict())


def _group_status_response(view: GroupStatusView) -> GroupStatusResponse:
    return GroupStatusResponse(
        group=_group_response(view.group),
        counts=_counts_response(view.counts),
    )


def _action_response(action: Action) -> ActionResponse:
    return ActionResponse(
        id=action.id,
        target_id=action.target_id,
        distribution_id=action.distribution_id,
        rollout_id=action.rollout_id,
        group_id=action.group_id,
        status=action.status,
        active=action.active,
        action_type=action.action_type,
        forced_time=action.forced_time,
        created_at=action.created_at,
        updated_at=action.updated_at,
    )


def _history_response(entry: ActionStatusEntry) -> ActionHistoryResponse:
    return ActionHistoryResponse(
        id=entry.id,
        status=entry.status,
        message=entry.message,
        reported_at=entry.reported_at,
    )


def _webhook_response(webhook: WebhookRegistration) -> WebhookResponse:
    return WebhookResponse(
        id=webhook.id,
        name=webhook.name,
        url=webhook.url,
        event_types=list(webhook.event_types) if webhook.event_types else None,
        enabled=webhook.enabled,
        created_at=webhook.created_at,
        updated_at=webhook.updated_at,
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return build_health_response(SERVICE_NAME)


@app.post("/targets", response_model=TargetResponse, status_code=201)
def create_target(request: Request, payload: TargetCreateRequest) -> TargetResponse:
    context = _authorize(request)
    with _domain_errors():
        target = _management().register_target(
            controller_id=payload.controller_id,
            name=payload.name,
            attributes=payload.attributes,
            tags=payload.tags,
            auth_context=context,
        )
    return _target_response(target)


@app.get("/targets", response_model=list[TargetResponse])
def list_targets(
    request: Request,
    target_filter: str | None = Query(default=None, alias="filter"),
    limit: int | None = Query(default=None, ge=1),
) -> list[TargetResponse]:
    context = _authorize(request)
    with _domain_errors():
        targets = _management().list_targets(
            target_filter=target_filter,
            limit=limit,
            auth_context=context,
        )
    return [_target_response(target) for target in targets]


@app.post("/distributions", response_model=DistributionResponse, status_code=201)
def create_distribution(
    request: Request,
    payload: DistributionCreateRequest,
) -> DistributionResponse:
    context = _authorize(request)
    with _domain_errors():
        distribution = _management().register_distribution(
            name=payload.name,
            version=payload.version,
            modules=payload.modules,
            auth_context=context,
        )
    return _distribution_response(distribution)


@app.get("/distributions", response_model=list[DistributionResponse])
def list_distributions(request: Request) -> list[DistributionResponse]:
    context = _authorize(request)
    with _domain_errors():
        distributions = _management().list_distributions(auth_context=context)
    return [_distribution_response(item) for item in distributions]


@app.post("/rollouts", response_model=RolloutResponse, status_code=201)
def create_rollout(request: Request, payload: RolloutCreateRequest) -> RolloutResponse:
    context = _authorize(request)
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    with _domain_errors():
        rollout = _management().create_rollout(
            name=payload.name,
            distribution_id=payload.distribution_id,
            target_filter=payload.target_filter,
            grouping=_grouping(payload),
            description=payload.description,
            action_type=payload.action_type,
            forced_time=payload.forced_time,
            start_at=payload.start_at,
            auth_context=context,
        )
    logger.info(
        "Rollout requested",
        extra={"request_id": request_id, "rollout_id": rollout.id},
    )
    return _rollout_response(rollout)


@app.get("/rollouts", response_model=list[RolloutResponse])
def list_rollouts(
    request: Request,
    status: list[str] | None = Query(default=None),
) -> list[RolloutResponse]:
    context = _authorize(request)
    statuses = [item.strip().upper() for item in status] if status else None
    with _domain_errors():
        rollouts = _management().list_rollouts(statuses=statuses, auth_context=context)
    return [_rollout_response(rollout) for rollout in rollouts]


@app.get("/rollouts/{rollout_id}", response_model=RolloutResponse)
def get_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    context = _authorize(request)
    with _domain_errors():
        rollout = _management().get_rollout(rollout_id, auth_context=context)
    return _rollout_response(rollout)


@app.get("/rollouts/{rollout_id}/status", response_model=RolloutStatusResponse)
def rollout_status(request: Request, rollout_id: str) -> RolloutStatusResponse:
    context = _authorize(request)
    with _domain_errors():
        view = _management().get_rollout_status(rollout_id, auth_context=context)
    return RolloutStatusResponse(
        rollout=_rollout_response(view.rollout),
        counts=_counts_response(view.counts),
        groups=[_group_status_response(group) for group in view.groups],
    )


@app.get("/rollouts/{rollout_id}/groups", response_model=list[GroupResponse])
def list_groups(request: Request, rollout_id: str) -> list[GroupResponse]:
    context = _authorize(request)
    with _domain_errors():
        groups = _management().list_groups(rollout_id, auth_context=context)
    return [_group_response(group) for group in groups]


@app.post("/rollouts/{rollout_id}/start", response_model=RolloutResponse)
def start_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    context = _authorize(request)
    with _domain_errors():
        rollout = _management().start_rollout(rollout_id, auth_context=context)
    return _rollout_response(rollout)


@app.post("/rollouts/{rollout_id}/pause", response_model=RolloutResponse)
def pause_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    context = _authorize(request)
    with _domain_errors():
        rollout = _management().pause_rollout(rollout_id, auth_context=context)
    return _rollout_response(rollout)


@app.post("/rollouts/{rollout_id}/resume", response_model=RolloutResponse)
def resume_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    context = _authorize(request)
    with _domain_errors():
        rollout = _management().resume_rollout(rollout_id, auth_context=context)
    return _rollout_response(rollout)


@app.post("/rollouts/{rollout_id}/stop", response_model=RolloutResponse)
def stop_rollout(
    request: Request,
    rollout_id: str,
    payload: StopRequest | None = None,
) -> RolloutResponse:
    context = _authorize(request)
    with _domain_errors():
        rollout = _management().stop_rollout(
            rollout_id,
            reason=payload.reason if payload else None,
            auth_context=context,
        )
    return _rollout_response(rollout)


@app.post("/rollouts/{rollout_id}/trigger-next", response_model=TriggerResponse)
def trigger_next(request: Request, rollout_id: str) -> TriggerResponse:
    context = _authorize(request)
    with _domain_errors():
        result = _management().trigger_next_group(rollout_id, auth_context=context)
    if result is None:
        return TriggerResponse(actions_created=0, actions_canceled=0)
    return TriggerResponse(
        group_id=result.group_id,
        actions_created=result.created,
        actions_canceled=result.canceled,
    )


@app.get("/groups/{group_id}/status", response_model=GroupStatusResponse)
def group_status(request: Request, group_id: str) -> GroupStatusResponse:
    context = _authorize(request)
    with _domain_errors():
        view = _management().get_group_status(group_id, auth_context=context)
    return _group_status_response(view)


@app.get("/actions", response_model=list[ActionResponse])
def list_actions(
    request: Request,
    rollout_id: str | None = None,
    group_id: str | None = None,
    target_id: str | None = None,
    active: bool | None = None,
) -> list[ActionResponse]:
    context = _authorize(request)
    with _domain_errors():
        actions = _management().list_actions(
            rollout_id=rollout_id,
            group_id=group_id,
            target_id=target_id,
            active=active,
            auth_context=context,
        )
    return [_action_response(action) for action in actions]


@app.post("/actions", response_model=ActionResponse, status_code=201)
def assign_distribution(request: Request, payload: AssignRequest) -> ActionResponse:
    context = _authorize(request)
    with _domain_errors():
        action = _management().assign_distribution(
            target_id=payload.target_id,
            distribution_id=payload.distribution_id,
            action_type=payload.action_type,
            forced_time=payload.forced_time,
            auth_context=context,
        )
    return _action_response(action)


@app.post("/actions/{action_id}/status", response_model=ActionResponse)
def report_action_status(
    request: Request,
    action_id: str,
    payload: ActionStatusRequest,
) -> ActionResponse:
    context = _authorize(request)
    with _domain_errors():
        action = _management().report_action_status(
            action_id,
            payload.status,
            message=payload.message,
            auth_context=context,
        )
    return _action_response(action)


@app.get("/actions/{action_id}/history", response_model=list[ActionHistoryResponse])
def action_history(request: Request, action_id: str) -> list[ActionHistoryResponse]:
    context = _authorize(request)
    with _domain_errors():
        entries = _management().action_history(action_id, auth_context=context)
    return [_history_response(entry) for entry in entries]


@app.get("/webhooks", response_model=list[WebhookResponse])
def list_webhooks(request: Request) -> list[WebhookResponse]:
    context = _authorize(request)
    config = _get_config()
    with _domain_errors():
        build_policy(config).authorize(context, ACTION_ROLLOUTS_READ, "webhooks")
        webhooks = load_webhooks(config.control_root_uri())
    return [_webhook_response(webhook) for webhook in webhooks]


@app.post("/webhooks", response_model=WebhookResponse, status_code=201)
def create_webhook(request: Request, payload: WebhookCreateRequest) -> WebhookResponse:
    context = _authorize(request)
    config = _get_config()
    unknown = [
        item
        for item in payload.event_types or []
        if "*" not in item and item not in EVENT_TYPES
    ]
    if unknown:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown event types: {', '.join(unknown)}",
        )
    with _domain_errors():
        build_policy(config).authorize(context, ACTION_ROLLOUTS_HANDLE, "webhooks")
        webhook = register_webhook(
            base_uri=config.control_root_uri(),
            name=payload.name,
            url=payload.url,
            secret=payload.secret,
            event_types=payload.event_types,
            enabled=payload.enabled,
            headers=payload.headers,
            timeout_s=payload.timeout_s,
        )
    return _webhook_response(webhook)


@app.delete("/webhooks/{webhook_id}", status_code=204, response_class=Response)
def remove_webhook(request: Request, webhook_id: str) -> Response:
    context = _authorize(request)
    config = _get_config()
    with _domain_errors():
        build_policy(config).authorize(context, ACTION_ROLLOUTS_HANDLE, "webhooks")
        delete_webhook(base_uri=config.control_root_uri(), webhook_id=webhook_id)
    return Response(status_code=204)


@app.post("/scheduler/tick", response_model=TickResponse)
def scheduler_tick(request: Request) -> TickResponse:
    context = _authorize(request)
    config = _get_config()
    with _domain_errors():
        build_policy(config).authorize(context, ACTION_ROLLOUTS_TICK, "scheduler")
        result = run_scheduler_tick(
            get_rollout_store(config),
            config=config,
            notifier=build_notifier(config),
        )
    return TickResponse(**result.to_dict())
