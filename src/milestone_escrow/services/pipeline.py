"""Settlement pipeline: lock, validate, ledger, store.

Every ledger-backed operation runs through SettlementPipeline.execute:

    1. Acquire the escrow's exclusive lock (OperationTimeoutError on expiry).
    2. Run the caller's prepare() in a short read transaction. It validates
       authorization and state and returns the SettlementIntent to submit.
       Validation errors leave no side effects. An escrow with a journaled
       intent still awaiting reconciliation is refused before prepare() runs.
    3. Submit the intent to the ledger. Ledger errors and timeouts abort
       here, before any store mutation.
    4. Apply the committed intent in one store transaction.
    5. If step 4 fails, journal the intent and raise
       ReconciliationRequiredError carrying the tx reference.

The store transaction is never open while the ledger call is in flight.
A single deadline bounds all five steps.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain.enums import ConditionType, SettlementKind
from milestone_escrow.domain.exceptions import (
    LedgerTimeoutError,
    OperationTimeoutError,
    ReconciliationPendingError,
    ReconciliationRequiredError,
)
from milestone_escrow.domain.ledger_protocol import LedgerMilestoneSpec
from milestone_escrow.logging_config import bind_operation_context, get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Awaitable, Callable

    from milestone_escrow.domain.ledger_protocol import LedgerClient
    from milestone_escrow.domain.settlement import SettlementIntent
    from milestone_escrow.infrastructure.database.store import RecordStore, UnitOfWork
    from milestone_escrow.infrastructure.locks import EscrowLocks
    from milestone_escrow.services.applier import SettlementApplier
    from milestone_escrow.services.journal import SettlementJournal

    Prepare = Callable[[UnitOfWork], Awaitable[SettlementIntent]]

logger = get_logger(__name__)


class Deadline:
    """Monotonic deadline shared by every step of one operation."""

    def __init__(self, timeout: float | None) -> None:
        self._expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


async def submit_to_ledger(ledger: LedgerClient, intent: SettlementIntent) -> str:
    """Issue the ledger call an intent describes; returns the ledger reference."""
    p = intent.payload
    ref = intent.contract_ref
    idx = intent.milestone_index
    match intent.kind:
        case SettlementKind.CREATE_ESCROW:
            return await ledger.create_escrow(
                client=p["client"],
                provider=p["provider"],
                amount=int(p["total_amount"]),
                token=p.get("token", ""),
                milestones=[
                    LedgerMilestoneSpec(
                        title=m["title"],
                        description=m.get("description", ""),
                        percentage_bps=int(m["percentage_bps"]),
                        amount=int(m["amount"]),
                        deadline=m.get("deadline"),
                    )
                    for m in p["milestones"]
                ],
            )
        case SettlementKind.RELEASE_MILESTONE:
            return await ledger.release_funds(ref, idx, int(p["amount"]))
        case SettlementKind.CANCEL_ESCROW:
            return await ledger.cancel_escrow(ref)
        case SettlementKind.ADD_CONDITION:
            return await ledger.add_release_condition(
                ref, idx, ConditionType(p["condition_type"]), p["data"]
            )
        case SettlementKind.VERIFY_CONDITION:
            return await ledger.verify_condition(ref, idx, int(p["position"]), p["verification"])
        case SettlementKind.REQUEST_MODIFICATION:
            return await ledger.request_modification(
                ref, idx, p.get("title"), p.get("description"), p.get("deadline")
            )
        case SettlementKind.APPROVE_MODIFICATION:
            return await ledger.approve_modification(ref, idx)
        case SettlementKind.CONFIRM_COMPLETION:
            return await ledger.confirm_completion(ref, idx)
        case SettlementKind.ADD_EVIDENCE:
            return await ledger.add_evidence(ref, idx, p["evidence_hash"])
        case SettlementKind.OPEN_DISPUTE:
            return await ledger.create_dispute(ref, idx, p["title"])
        case SettlementKind.RESOLVE_DISPUTE:
            return await ledger.resolve_dispute(ref, p["dispute_ref"], bool(p["favor_client"]))
    raise ValueError(f"Unknown settlement kind: {intent.kind}")


class SettlementPipeline:
    """Runs ledger-backed operations with per-escrow serialization."""

    def __init__(
        self,
        store: RecordStore,
        ledger: LedgerClient,
        locks: EscrowLocks,
        applier: SettlementApplier,
        journal: SettlementJournal,
        *,
        ledger_timeout: float = 10.0,
        default_timeout: float | None = 30.0,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._locks = locks
        self._applier = applier
        self._journal = journal
        self._ledger_timeout = ledger_timeout
        self._default_timeout = default_timeout

    async def execute(
        self,
        escrow_id: uuid.UUID,
        prepare: Prepare,
        *,
        operation: str,
        timeout: float | None = None,
    ) -> Any:
        """Run one settlement for an escrow and return what the applier returned."""
        deadline = Deadline(timeout if timeout is not None else self._default_timeout)

        with bind_operation_context(escrow_id=str(escrow_id), operation=operation):
            async with self._locks.hold(escrow_id, deadline.remaining()):
                async with self._store.transaction() as uow:
                    if await uow.settlements.has_pending_for_escrow(escrow_id):
                        raise ReconciliationPendingError(escrow_id)
                    intent = await prepare(uow)

                if deadline.expired:
                    raise OperationTimeoutError(operation)

                ledger_ref = await self._submit(intent, deadline)
                committed = intent.committed(ledger_ref)
                logger.info("ledger.committed", tx_ref=ledger_ref, kind=intent.kind.value)

                return await self._apply(committed, deadline)

    async def _submit(self, intent: SettlementIntent, deadline: Deadline) -> str:
        remaining = deadline.remaining()
        budget = self._ledger_timeout if remaining is None else min(self._ledger_timeout, remaining)
        try:
            async with asyncio.timeout(budget):
                return await submit_to_ledger(self._ledger, intent)
        except TimeoutError as err:
            logger.warning("ledger.call_timeout", kind=intent.kind.value, timeout=budget)
            raise LedgerTimeoutError(intent.kind.value, budget) from err

    async def _apply(self, intent: SettlementIntent, deadline: Deadline) -> Any:
        try:
            async with asyncio.timeout(deadline.remaining()):
                return await self._store.run_in_transaction(
                    lambda uow: self._applier.apply(uow, intent)
                )
        except asyncio.CancelledError:
            await asyncio.shield(self._journal.record_pending(intent, "operation cancelled"))
            raise
        except Exception as exc:
            reason = "store write timed out" if isinstance(exc, TimeoutError) else str(exc) or type(exc).__name__
            logger.error(
                "settlement.store_failed_after_ledger",
                tx_ref=intent.tx_ref,
                kind=intent.kind.value,
                error=reason,
            )
            await self._journal.record_pending(intent, reason)
            raise ReconciliationRequiredError(intent, reason) from exc
