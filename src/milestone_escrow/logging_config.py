"""Structured logging configuration using structlog.

JSON output in production, colored console output in development. Request
middleware binds a request_id and the settlement pipeline binds escrow_id and
operation, so every entry emitted while a settlement is in flight can be
traced back to its escrow and ledger transaction.

Oracle signatures and ledger credentials never reach the output: any event
key listed in REDACTED_KEYS is masked before rendering.

Usage:
    from milestone_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("escrow.created", escrow_id="abc-123", total_amount="1000")
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

    from structlog.types import EventDict, Processor, WrappedLogger

REDACTED_KEYS = frozenset({"api_key", "authorization", "signature", "secret", "oracle_secrets"})

# Third-party loggers kept at WARNING unless explicitly asked for
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "asyncio")


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: "***" if k in REDACTED_KEYS else _redact(v) for k, v in value.items()}
    return value


def redact_sensitive(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """structlog processor masking secrets, including inside logged intents."""
    for key, value in event_dict.items():
        if key in REDACTED_KEYS:
            event_dict[key] = "***"
        elif isinstance(value, dict):
            event_dict[key] = _redact(value)
    return event_dict


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False, *, sql_echo: bool = False) -> None:
    """Route structlog and stdlib logging through one formatter on stdout.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: If True, output JSON (for production). If False, colored console.
        sql_echo: Keep SQLAlchemy engine logging at INFO (statement echo).
    """
    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer: Processor = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # Records from stdlib loggers (uvicorn, sqlalchemy) get the same treatment
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_operation_context(**values: str) -> AbstractContextManager:
    """Bind settlement context (escrow_id, operation, ...) for a block of code.

    Usage:
        with bind_operation_context(escrow_id=str(escrow_id), operation="release_milestone"):
            ...
    """
    return structlog.contextvars.bound_contextvars(**values)
