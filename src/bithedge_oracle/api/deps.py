"""Dependency injection for FastAPI routes."""

from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse

from bithedge_oracle.core.config import OracleConfig
from bithedge_oracle.pipeline.scheduler import Scheduler
from bithedge_oracle.pipeline.service import OracleService


@dataclass
class AppState:
    """Shared application state, attached to app.state during lifespan."""

    config: OracleConfig
    service: OracleService
    scheduler: Scheduler | None = None
    scheduler_task: asyncio.Task | None = None


def get_app_state(request: Request) -> AppState:
    """Dependency: retrieve AppState from the request."""
    return request.app.state.app_state


def get_service(request: Request) -> OracleService:
    """Dependency: retrieve the oracle service."""
    return request.app.state.app_state.service


PUBLIC_PATHS = frozenset({"/api/health"})


async def api_key_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests without the configured ``X-API-Key``.

    Installed only when ``api.api_key`` is set. Health stays public so
    load balancers can probe it.
    """
    if request.url.path in PUBLIC_PATHS:
        return await call_next(request)

    expected = request.app.state.app_state.config.api.api_key
    supplied = request.headers.get("X-API-Key", "")
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        return JSONResponse(
            status_code=401,
            content={"error": "Unauthorized", "detail": "Invalid or missing API key"},
        )
    return await call_next(request)
