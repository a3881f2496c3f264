"""Reconciliation Service: brings the store back in line with the ledger.

The only component allowed to retry a ledger-confirmed effect against the
store. For each pending journal record:

    ledger says committed  -> re-apply the intent (idempotent by tx_ref)
    ledger says pending    -> defer to the next sweep
    ledger says failed or
    does not know the tx   -> discard the record

Creation intents are confirmed by looking the contract up on the ledger;
every other intent by its transaction status.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import SettlementKind, SettlementStatus, TransactionStatus
from milestone_escrow.domain.exceptions import EntityNotFoundError, EscrowError, LedgerError
from milestone_escrow.domain.settlement import SettlementIntent
from milestone_escrow.logging_config import bind_operation_context, get_logger

if TYPE_CHECKING:
    from milestone_escrow.domain.ledger_protocol import LedgerClient
    from milestone_escrow.infrastructure.database.orm_models import SettlementRecord
    from milestone_escrow.infrastructure.database.store import RecordStore
    from milestone_escrow.infrastructure.locks import EscrowLocks
    from milestone_escrow.services.applier import SettlementApplier
    from milestone_escrow.services.journal import SettlementJournal

logger = get_logger(__name__)


class ReconcileOutcome(enum.StrEnum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    DEFERRED = "deferred"
    DISCARDED = "discarded"
    FAILED = "failed"


@dataclass
class ReconciliationReport:
    """Result of one sweep, as tx references grouped by outcome."""

    applied: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.applied) + len(self.deferred) + len(self.discarded) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "applied": self.applied,
            "deferred": self.deferred,
            "discarded": self.discarded,
            "failed": self.failed,
        }


class ReconciliationService:
    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerClient,
        applier: SettlementApplier,
        journal: SettlementJournal,
        locks: EscrowLocks,
        *,
        batch_size: int = 100,
        lock_timeout: float | None = 30.0,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._applier = applier
        self._journal = journal
        self._locks = locks
        self._batch_size = batch_size
        self._lock_timeout = lock_timeout

    async def sweep(self, limit: int | None = None) -> ReconciliationReport:
        """Process up to `limit` pending journal records, oldest first."""
        report = ReconciliationReport()
        records = await self._journal.pending(limit or self._batch_size)
        for record in records:
            intent = SettlementIntent.from_dict(record.intent)
            outcome, error = await self._process(intent)
            match outcome:
                case ReconcileOutcome.APPLIED | ReconcileOutcome.ALREADY_APPLIED:
                    report.applied.append(record.tx_ref)
                case ReconcileOutcome.DEFERRED:
                    report.deferred.append(record.tx_ref)
                case ReconcileOutcome.DISCARDED:
                    report.discarded.append(record.tx_ref)
                case ReconcileOutcome.FAILED:
                    report.failed[record.tx_ref] = error or "unknown error"

        if report.processed:
            logger.info("reconciliation.sweep_done", **report.to_dict())
        return report

    async def reconcile(self, target: SettlementIntent | str) -> ReconcileOutcome:
        """Reconcile a single intent, or a journaled tx reference."""
        if isinstance(target, SettlementIntent):
            if not target.tx_ref:
                raise ValueError("only intents the ledger committed can be reconciled")
            intent = target
            async with self._store.transaction() as uow:
                if await uow.settlements.get_by_tx_ref(intent.tx_ref) is None:
                    await uow.settlements.record_pending(intent, "submitted for reconciliation")
        else:
            async with self._store.transaction() as uow:
                record = await uow.settlements.get_by_tx_ref(target)
            if record is None:
                raise EntityNotFoundError("settlement", target)
            intent = SettlementIntent.from_dict(record.intent)

        outcome, _ = await self._process(intent)
        return outcome

    async def pending(self, limit: int | None = None) -> list[SettlementRecord]:
        return await self._journal.pending(limit or self._batch_size)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _ledger_status(self, intent: SettlementIntent) -> TransactionStatus:
        if intent.kind is SettlementKind.CREATE_ESCROW:
            details = await self._ledger.get_escrow_details(intent.contract_ref)
            return TransactionStatus.COMMITTED if details is not None else TransactionStatus.UNKNOWN
        return await self._ledger.get_transaction_status(intent.tx_ref)

    async def _process(self, intent: SettlementIntent) -> tuple[ReconcileOutcome, str | None]:
        tx_ref = intent.tx_ref
        with bind_operation_context(escrow_id=str(intent.escrow_id), operation="reconcile", tx_ref=tx_ref):
            async with self._store.transaction() as uow:
                record = await uow.settlements.get_by_tx_ref(tx_ref)
                if record is not None and record.status == SettlementStatus.APPLIED.value:
                    return ReconcileOutcome.ALREADY_APPLIED, None
                if record is not None and record.status == SettlementStatus.DISCARDED.value:
                    return ReconcileOutcome.DISCARDED, None

            try:
                status = await self._ledger_status(intent)
            except LedgerError as exc:
                logger.warning("reconciliation.ledger_unreachable", error=exc.message)
                return ReconcileOutcome.FAILED, exc.message

            if status is TransactionStatus.PENDING:
                logger.info("reconciliation.deferred")
                return ReconcileOutcome.DEFERRED, None

            if status is not TransactionStatus.COMMITTED:
                async with self._store.transaction() as uow:
                    record = await uow.settlements.get_by_tx_ref(tx_ref)
                    if record is not None:
                        await uow.settlements.mark_discarded(record, f"ledger reports {status.value}")
                logger.warning("reconciliation.discarded", ledger_status=status.value)
                return ReconcileOutcome.DISCARDED, None

            try:
                async with self._locks.hold(intent.escrow_id, self._lock_timeout):
                    applied = await self._store.run_in_transaction(
                        lambda uow: self._applier.apply(uow, intent)
                    )
            except EscrowError as exc:
                await self._journal.record_pending(intent, exc.message)
                logger.error("reconciliation.apply_failed", error=exc.message, error_code=exc.code)
                return ReconcileOutcome.FAILED, exc.message
            except Exception as exc:
                await self._journal.record_pending(intent, str(exc) or type(exc).__name__)
                logger.exception("reconciliation.apply_failed")
                return ReconcileOutcome.FAILED, str(exc) or type(exc).__name__

            if applied is None:
                return ReconcileOutcome.ALREADY_APPLIED, None
            logger.info("reconciliation.applied", kind=intent.kind.value)
            return ReconcileOutcome.APPLIED, None
