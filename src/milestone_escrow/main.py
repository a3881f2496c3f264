"""FastAPI application entry point for the milestone escrow service.

Lifecycle:
    1. Startup: Initialize logging, database, Redis and the ledger client,
       build the service container and start the reconciliation sweeper.
    2. Running: Serve the REST API at /api/v1/*.
    3. Shutdown: Stop the sweeper, close the ledger client, database and Redis.

Run with:
    uvicorn milestone_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from milestone_escrow import __version__
from milestone_escrow.config import Settings, get_settings
from milestone_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from milestone_escrow.services.container import ServiceContainer

logger = get_logger(__name__)


async def run_reconciliation_sweeper(container: ServiceContainer, interval: float) -> None:
    """Sweep the settlement journal every `interval` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await container.reconciliation.sweep()
        except Exception:
            logger.exception("reconciliation.sweep_crashed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings: Settings = app.state.settings

    if getattr(app.state, "container", None) is not None:
        # Prebuilt container (tests, embedding); its owner manages resources.
        yield
        return

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
        sql_echo=settings.db_echo_sql,
    )
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    # 2. Initialize database
    from milestone_escrow.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )

    await init_db()

    # 3. Initialize Redis (optional unless it backs the escrow locks)
    from milestone_escrow.infrastructure.redis_client import (
        close_redis,
        get_redis,
        init_redis,
        redis_available,
    )

    try:
        await init_redis()
    except Exception as exc:
        if settings.lock_backend == "redis":
            raise
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Ledger client and services
    from milestone_escrow.infrastructure.ledger import JsonRpcLedgerClient
    from milestone_escrow.infrastructure.locks import LocalEscrowLocks, RedisEscrowLocks
    from milestone_escrow.services.container import build_container

    ledger = JsonRpcLedgerClient(
        settings.ledger_rpc_url,
        api_key=settings.ledger_api_key,
        timeout=settings.ledger_timeout_seconds,
    )
    if settings.lock_backend == "redis" and redis_available():
        locks = RedisEscrowLocks(get_redis(), ttl_seconds=settings.lock_ttl_seconds)
    else:
        locks = LocalEscrowLocks()

    container = build_container(settings, get_session_factory(), ledger, locks=locks)
    app.state.container = container

    # 5. Reconciliation sweeper
    sweeper: asyncio.Task | None = None
    if settings.reconciliation_sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(
            run_reconciliation_sweeper(container, settings.reconciliation_sweep_interval_seconds)
        )

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await ledger.aclose()
    await close_db()
    await close_redis()
    app.state.container = None
    logger.info("app.stopped")


def create_app(
    settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """Application factory; creates and configures the FastAPI app."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Milestone Escrow",
        description=(
            "Escrow service that locks funds on a ledger and releases them "
            "milestone by milestone."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    app.state.settings = settings
    app.state.container = container

    # --- Middleware ---
    from milestone_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from milestone_escrow.api.routes.conditions import router as conditions_router
    from milestone_escrow.api.routes.disputes import router as disputes_router
    from milestone_escrow.api.routes.escrow import router as escrow_router
    from milestone_escrow.api.routes.health import router as health_router
    from milestone_escrow.api.routes.ledger import router as ledger_router

    app.include_router(health_router)
    app.include_router(escrow_router)
    app.include_router(conditions_router)
    app.include_router(disputes_router)
    app.include_router(ledger_router)

    return app


# The app instance used by Uvicorn
app = create_app()
