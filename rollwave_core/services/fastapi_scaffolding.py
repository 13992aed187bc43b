from __future__ import annotations

import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

LOCAL_ENVS = {"dev", "local", "test"}


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    commit: str
    timestamp: str


def is_local_env(env: str | None = None) -> bool:
    value = (env or os.getenv("ENV", "dev")).lower()
    return value in LOCAL_ENVS


def cors_origins(
    *,
    raw: str | None = None,
    env: str | None = None,
) -> list[str]:
    raw_value = raw if raw is not None else os.getenv("CORS_ALLOW_ORIGINS", "")
    if raw_value:
        return [origin.strip() for origin in raw_value.split(",") if origin.strip()]
    if is_local_env(env):
        return ["*"]
    return []


def apply_cors_middleware(
    app: FastAPI,
    *,
    raw_origins: str | None = None,
    env: str | None = None,
) -> list[str]:
    origins = cors_origins(raw=raw_origins, env=env)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    return origins


def request_id(header_value: str | None) -> str:
    if header_value:
        return header_value
    return str(uuid.uuid4())


def add_request_id_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def _add_request_id(request: Request, call_next):
        value = request_id(request.headers.get("x-request-id"))
        request.state.request_id = value
        response = await call_next(request)
        response.headers["x-request-id"] = value
        return response


def build_health_response(
    service_name: str,
    *,
    status: str = "ok",
    version: str | None = None,
    commit: str | None = None,
) -> HealthResponse:
    return HealthResponse(
        status=status,
        service=service_name,
        version=version or os.getenv("ROLLWAVE_VERSION", "dev"),
        commit=commit or os.getenv("GIT_COMMIT", "unknown"),
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    )
