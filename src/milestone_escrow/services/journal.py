"""Settlement journal: durable record of ledger commits awaiting the store.

Writes happen in their own transaction, separate from the failed mutation,
so the tx reference survives even when the original transaction rolled
back. If even the journal write fails, the full intent is logged at error
level; that log line is the last-resort recovery key.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from milestone_escrow.domain.settlement import SettlementIntent
    from milestone_escrow.infrastructure.database.orm_models import SettlementRecord
    from milestone_escrow.infrastructure.database.store import RecordStore

logger = get_logger(__name__)


class SettlementJournal:
    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def record_pending(self, intent: SettlementIntent, error: str) -> bool:
        """Journal an intent for reconciliation. Returns False if the write failed."""
        try:
            async with self._store.transaction() as uow:
                await uow.settlements.record_pending(intent, error)
        except (SQLAlchemyError, OSError) as exc:
            logger.error(
                "reconciliation.journal_failed",
                tx_ref=intent.tx_ref,
                intent=intent.to_dict(),
                error=str(exc),
            )
            return False
        logger.error(
            "reconciliation.journaled",
            tx_ref=intent.tx_ref,
            kind=intent.kind.value,
            escrow_id=str(intent.escrow_id),
            error=error,
        )
        return True

    async def pending(self, limit: int = 100) -> list[SettlementRecord]:
        async with self._store.transaction() as uow:
            return await uow.settlements.list_pending(limit)
