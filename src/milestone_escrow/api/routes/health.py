"""Health check endpoint.

Verifies connectivity to the database, Redis and the ledger and returns a
structured status. Used by container healthchecks and load balancers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text

from milestone_escrow import __version__
from milestone_escrow.api.deps import get_app_settings, get_container
from milestone_escrow.config import Settings
from milestone_escrow.domain.exceptions import LedgerError, LedgerTimeoutError, LedgerUnavailableError
from milestone_escrow.infrastructure import redis_client
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.escrow import HealthResponse
from milestone_escrow.services.container import ServiceContainer

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(
    container: ServiceContainer = Depends(get_container),
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """Check connectivity to the database, Redis and the ledger."""
    db_status = "unknown"
    redis_status = "disabled"
    ledger_status = "unknown"

    try:
        async with container.store.transaction() as uow:
            await uow.session.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if redis_client.redis_available():
        try:
            await redis_client.get_redis().ping()
            redis_status = "healthy"
        except Exception as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    # Any answer from the ledger, even a rejection, proves it is reachable.
    try:
        await container.ledger.get_balance(settings.default_token_address or "0x0")
        ledger_status = "healthy"
    except (LedgerUnavailableError, LedgerTimeoutError) as exc:
        ledger_status = f"unhealthy: {exc.message}"
        logger.error("health.ledger_check_failed", error=exc.message, code=exc.code)
    except LedgerError:
        ledger_status = "healthy"

    healthy = db_status == "healthy" and ledger_status == "healthy" and not redis_status.startswith("unhealthy")
    return HealthResponse(
        status="ok" if healthy else "degraded",
        version=__version__,
        database=db_status,
        redis=redis_status,
        ledger=ledger_status,
    )
