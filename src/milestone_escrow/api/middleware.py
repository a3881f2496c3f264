"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware: injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware: catches domain exceptions -> structured JSON errors
    3. CORSMiddleware: handles browser-based clients
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from milestone_escrow.domain.exceptions import (
    AmountMismatchError,
    ConditionNotYetDueError,
    ConflictingDisputeError,
    DuplicateOperationError,
    EntityNotFoundError,
    EscrowError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidStateError,
    InvalidStateTransitionError,
    LedgerError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    OperationTimeoutError,
    OracleVerificationFailedError,
    ReconciliationPendingError,
    ReconciliationRequiredError,
    UnauthorizedError,
    ValidationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

# Most specific class wins; lookup walks the exception's MRO.
ERROR_STATUS: dict[type[EscrowError], int] = {
    ValidationError: 422,
    OracleVerificationFailedError: 422,
    InvalidAddressError: 422,
    InsufficientFundsError: 402,
    UnauthorizedError: 403,
    EntityNotFoundError: 404,
    InvalidStateError: 409,
    ReconciliationPendingError: 409,
    ConflictingDisputeError: 409,
    AmountMismatchError: 409,
    DuplicateOperationError: 409,
    ConditionNotYetDueError: 425,
    LedgerError: 502,
    LedgerUnavailableError: 503,
    LedgerTimeoutError: 504,
    OperationTimeoutError: 504,
}


def status_for(exc: EscrowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


def _error_body(exc: EscrowError) -> dict:
    body: dict = {"error": exc.code, "message": exc.message}
    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, OracleVerificationFailedError) and exc.details:
        body["details"] = exc.details
    return body


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind X-Request-ID and the acting address to every log entry of a request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        context = {"request_id": request_id, "path": request.url.path}
        actor = request.headers.get("X-Actor-Address")
        if actor:
            context["actor"] = actor.strip()

        with structlog.contextvars.bound_contextvars(**context):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except ReconciliationRequiredError as exc:
            # The ledger moved funds; the store catches up on the next sweep.
            logger.error("settlement.reconciliation_required", tx_ref=exc.tx_ref, error=exc.reason)
            return JSONResponse(
                status_code=202,
                content={
                    "error": exc.code,
                    "message": exc.message,
                    "tx_ref": exc.tx_ref,
                    "kind": exc.intent.kind.value,
                },
            )
        except EntityNotFoundError as exc:
            logger.warning("entity.not_found", entity=exc.entity, entity_id=exc.entity_id)
            return JSONResponse(status_code=404, content=_error_body(exc))
        except InvalidStateTransitionError as exc:
            logger.warning(
                "state_machine.invalid_transition",
                entity=exc.entity,
                current=exc.current_state,
                attempted=exc.event,
            )
            return JSONResponse(status_code=409, content=_error_body(exc))
        except LedgerError as exc:
            logger.error("ledger.error", error=exc.message, code=exc.code)
            return JSONResponse(status_code=status_for(exc), content=_error_body(exc))
        except EscrowError as exc:
            logger.warning("domain.error", error=exc.message, code=exc.code)
            return JSONResponse(status_code=status_for(exc), content=_error_body(exc))
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Middleware is applied bottom-up, so the last added middleware runs first.
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Actor-Address", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)
