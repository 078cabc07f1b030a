"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bithedge_oracle.api.deps import AppState, api_key_middleware
from bithedge_oracle.api.routes import router
from bithedge_oracle.core.clock import Clock
from bithedge_oracle.core.config import OracleConfig, load_config
from bithedge_oracle.core.exceptions import (
    ConfigError,
    InsufficientConsensusError,
    InsufficientDataError,
    InvalidInputError,
    OracleError,
    StorageError,
)
from bithedge_oracle.pipeline.scheduler import Scheduler
from bithedge_oracle.pipeline.service import OracleService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle."""
    config = app.state._pending_config
    service = await OracleService.create(config, clock=app.state._pending_clock)
    state = AppState(config=config, service=service)

    if config.api.run_scheduler:
        state.scheduler = Scheduler(service, config.scheduler, clock=service.clock)
        state.scheduler_task = asyncio.create_task(state.scheduler.run())
        logger.info("Background scheduler started")

    app.state.app_state = state

    yield

    if state.scheduler is not None:
        state.scheduler.stop()
        await state.scheduler_task
    await service.close()


def create_app(config: OracleConfig | None = None, clock: Clock | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    import bithedge_oracle

    if config is None:
        config = load_config()

    app = FastAPI(
        title="BitHedge Oracle API",
        description="BTC consensus price, volatility and option premiums",
        version=bithedge_oracle.__version__,
        lifespan=lifespan,
    )

    # Stash config so lifespan can retrieve it
    app.state._pending_config = config
    app.state._pending_clock = clock

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    # Optional API key middleware
    if config.api.api_key:
        app.middleware("http")(api_key_middleware)

    app.include_router(router, prefix="/api")

    # Exception handlers
    @app.exception_handler(OracleError)
    async def oracle_exception_handler(request: Request, exc: OracleError):
        status_map = {
            InsufficientConsensusError: 503,
            InsufficientDataError: 503,
            InvalidInputError: 422,
            ConfigError: 400,
            StorageError: 500,
        }
        status = status_map.get(type(exc), 500)
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    return app
