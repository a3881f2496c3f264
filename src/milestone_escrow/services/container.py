"""Service wiring.

Builds the services with their collaborators injected. The FastAPI lifespan
and the CLI build one container from settings; tests build one around an
in-memory ledger and a SQLite store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from milestone_escrow.domain.clock import utcnow
from milestone_escrow.infrastructure.database.store import RecordStore
from milestone_escrow.infrastructure.locks import LocalEscrowLocks
from milestone_escrow.oracles.schema_oracle import SignedSchemaOracleVerifier
from milestone_escrow.services.applier import SettlementApplier
from milestone_escrow.services.condition_service import ConditionService
from milestone_escrow.services.dispute_service import DisputeService
from milestone_escrow.services.escrow_service import EscrowService
from milestone_escrow.services.journal import SettlementJournal
from milestone_escrow.services.pipeline import SettlementPipeline
from milestone_escrow.services.reconciliation_service import ReconciliationService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from milestone_escrow.config import Settings
    from milestone_escrow.domain.clock import Clock
    from milestone_escrow.domain.ledger_protocol import LedgerClient, OracleVerifier
    from milestone_escrow.infrastructure.locks import EscrowLocks


@dataclass
class ServiceContainer:
    store: RecordStore
    ledger: LedgerClient
    locks: EscrowLocks
    pipeline: SettlementPipeline
    escrows: EscrowService
    conditions: ConditionService
    disputes: DisputeService
    reconciliation: ReconciliationService


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: LedgerClient,
    *,
    locks: EscrowLocks | None = None,
    oracle: OracleVerifier | None = None,
    applier: SettlementApplier | None = None,
    clock: Clock = utcnow,
) -> ServiceContainer:
    store = RecordStore(session_factory)
    locks = locks or LocalEscrowLocks()
    applier = applier or SettlementApplier(clock=clock)
    journal = SettlementJournal(store)
    pipeline = SettlementPipeline(
        store,
        ledger,
        locks,
        applier,
        journal,
        ledger_timeout=settings.ledger_timeout_seconds,
        default_timeout=settings.operation_timeout_seconds,
    )
    escrows = EscrowService(
        store,
        pipeline,
        ledger,
        default_token=settings.default_token_address,
        default_auto_release=settings.default_auto_release,
        clock=clock,
    )
    conditions = ConditionService(
        store,
        pipeline,
        escrows,
        oracle or SignedSchemaOracleVerifier(settings.oracle_secrets),
        trusted_verifiers=settings.trusted_verifier_list,
        clock=clock,
    )
    disputes = DisputeService(store, pipeline, arbiters=settings.arbiter_list)
    reconciliation = ReconciliationService(
        store,
        ledger,
        applier,
        journal,
        locks,
        batch_size=settings.reconciliation_batch_size,
        lock_timeout=settings.operation_timeout_seconds,
    )
    return ServiceContainer(
        store=store,
        ledger=ledger,
        locks=locks,
        pipeline=pipeline,
        escrows=escrows,
        conditions=conditions,
        disputes=disputes,
        reconciliation=reconciliation,
    )
