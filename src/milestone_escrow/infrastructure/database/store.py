"""Durable record store.

The RecordStore hands out one UnitOfWork per transaction. A UnitOfWork owns
an AsyncSession and the repositories bound to it; the transaction commits
when the block exits normally and rolls back on any exception.

Usage:
    store = RecordStore(get_session_factory())
    async with store.transaction() as uow:
        escrow = await uow.escrows.get_by_id(escrow_id)

    escrow = await store.run_in_transaction(lambda uow: uow.escrows.get_by_id(escrow_id))
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

from milestone_escrow.infrastructure.database.repositories import (
    ConditionRepository,
    DisputeMessageRepository,
    DisputeRepository,
    EscrowRepository,
    EventRepository,
    MilestoneRepository,
    SettlementRepository,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

T = TypeVar("T")


class UnitOfWork:
    """Repositories sharing a single session and transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.escrows = EscrowRepository(session)
        self.milestones = MilestoneRepository(session)
        self.conditions = ConditionRepository(session)
        self.disputes = DisputeRepository(session)
        self.messages = DisputeMessageRepository(session)
        self.events = EventRepository(session)
        self.settlements = SettlementRepository(session)


class RecordStore:
    """Transactional access to the escrow records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[UnitOfWork]:
        async with self._session_factory() as session, session.begin():
            yield UnitOfWork(session)

    async def run_in_transaction(self, fn: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        """Run fn inside one transaction: all of its writes commit, or none do."""
        async with self.transaction() as uow:
            return await fn(uow)
