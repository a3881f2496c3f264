"""Operator command line for settlement reconciliation.

Usage:
    milestone-escrow pending [--limit N]
    milestone-escrow sweep [--limit N]
    milestone-escrow reconcile <tx_ref>

Runs against the database and ledger configured in the environment, so it can
repair the store while the API is down.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from milestone_escrow.config import get_settings
from milestone_escrow.domain.exceptions import EscrowError
from milestone_escrow.infrastructure.database.engine import (
    create_engine_for_url,
    make_session_factory,
)
from milestone_escrow.infrastructure.ledger import JsonRpcLedgerClient
from milestone_escrow.logging_config import get_logger, setup_logging
from milestone_escrow.services.container import build_container
from milestone_escrow.services.reconciliation_service import ReconcileOutcome

logger = get_logger("milestone_escrow.cli")


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = create_engine_for_url(settings.database_url, settings)
    ledger = JsonRpcLedgerClient(
        settings.ledger_rpc_url,
        api_key=settings.ledger_api_key,
        timeout=settings.ledger_timeout_seconds,
    )
    container = build_container(settings, make_session_factory(engine), ledger)
    try:
        if args.command == "pending":
            records = await container.reconciliation.pending(args.limit)
            for record in records:
                print(
                    f"{record.tx_ref}  {record.kind:<22} escrow={record.escrow_id} "
                    f"attempts={record.attempts} error={record.last_error or '-'}"
                )
            print(f"{len(records)} pending settlement(s)")
            return 0

        if args.command == "sweep":
            report = await container.reconciliation.sweep(args.limit)
            print(json.dumps(report.to_dict(), indent=2))
            return 1 if report.failed else 0

        outcome = await container.reconciliation.reconcile(args.tx_ref)
        print(f"{args.tx_ref}: {outcome.value}")
        return 1 if outcome is ReconcileOutcome.FAILED else 0
    except EscrowError as exc:
        logger.error("cli.failed", command=args.command, error=exc.message, code=exc.code)
        return 2
    finally:
        await ledger.aclose()
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="milestone-escrow",
        description="Milestone escrow settlement reconciliation",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    pending = sub.add_parser("pending", help="List settlements awaiting reconciliation.")
    pending.add_argument("--limit", type=int, default=None, help="Maximum records to list.")

    sweep = sub.add_parser("sweep", help="Run one reconciliation sweep.")
    sweep.add_argument("--limit", type=int, default=None, help="Maximum records to process.")

    reconcile = sub.add_parser("reconcile", help="Reconcile one settlement by tx reference.")
    reconcile.add_argument("tx_ref", help="Ledger transaction reference.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
