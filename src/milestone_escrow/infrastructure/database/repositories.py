"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the RecordStore's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select

from milestone_escrow.domain.enums import DisputeStatus, SettlementStatus
from milestone_escrow.infrastructure.database.orm_models import (
    Dispute,
    DisputeMessage,
    Escrow,
    EscrowEvent,
    Milestone,
    ReleaseCondition,
    SettlementRecord,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from milestone_escrow.domain.enums import EscrowStatus, EventType
    from milestone_escrow.domain.settlement import SettlementIntent


class EscrowRepository:
    """Data access for escrows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, escrow: Escrow) -> Escrow:
        """Insert a new escrow (with its milestones via cascade)."""
        self._session.add(escrow)
        await self._session.flush()
        return escrow

    async def get_by_id(self, escrow_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(select(Escrow).where(Escrow.id == escrow_id))
        return result.scalar_one_or_none()

    async def get_for_update(self, escrow_id: uuid.UUID) -> Escrow | None:
        """Fetch an escrow row locked FOR UPDATE (no-op lock on SQLite)."""
        result = await self._session.execute(
            select(Escrow)
            .where(Escrow.id == escrow_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_contract_ref(self, contract_ref: str) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow).where(Escrow.contract_ref == contract_ref)
        )
        return result.scalar_one_or_none()

    async def find_by_user(
        self,
        address: str,
        status: EscrowStatus | None = None,
    ) -> list[Escrow]:
        """Fetch escrows where the address is the client or the provider, newest first."""
        stmt = select(Escrow).where(
            or_(Escrow.client_address == address, Escrow.provider_address == address)
        )
        if status is not None:
            stmt = stmt.where(Escrow.status == status.value)
        result = await self._session.execute(stmt.order_by(Escrow.created_at.desc()))
        return list(result.scalars().all())


class MilestoneRepository:
    """Data access for milestones."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, milestone_id: uuid.UUID) -> Milestone | None:
        result = await self._session.execute(
            select(Milestone).where(Milestone.id == milestone_id)
        )
        return result.scalar_one_or_none()

    async def find_by_escrow(self, escrow_id: uuid.UUID) -> list[Milestone]:
        result = await self._session.execute(
            select(Milestone)
            .where(Milestone.escrow_id == escrow_id)
            .order_by(Milestone.position.asc())
        )
        return list(result.scalars().all())


class ConditionRepository:
    """Data access for release conditions. Conditions are never deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, condition: ReleaseCondition) -> ReleaseCondition:
        self._session.add(condition)
        await self._session.flush()
        return condition

    async def get_by_id(self, condition_id: uuid.UUID) -> ReleaseCondition | None:
        result = await self._session.execute(
            select(ReleaseCondition).where(ReleaseCondition.id == condition_id)
        )
        return result.scalar_one_or_none()

    async def find_by_milestone(self, milestone_id: uuid.UUID) -> list[ReleaseCondition]:
        result = await self._session.execute(
            select(ReleaseCondition)
            .where(ReleaseCondition.milestone_id == milestone_id)
            .order_by(ReleaseCondition.position.asc())
        )
        return list(result.scalars().all())


class DisputeRepository:
    """Data access for disputes. Disputes are never deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(select(Dispute).where(Dispute.id == dispute_id))
        return result.scalar_one_or_none()

    async def find_by_escrow(self, escrow_id: uuid.UUID) -> list[Dispute]:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.escrow_id == escrow_id)
            .order_by(Dispute.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_by_milestone(self, milestone_id: uuid.UUID) -> list[Dispute]:
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.milestone_id == milestone_id)
            .order_by(Dispute.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_open_for_milestone(self, milestone_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute).where(
                Dispute.milestone_id == milestone_id,
                Dispute.status == DisputeStatus.OPEN.value,
            )
        )
        return result.scalar_one_or_none()

    async def find_open_escrow_level(self, escrow_id: uuid.UUID) -> Dispute | None:
        result = await self._session.execute(
            select(Dispute).where(
                Dispute.escrow_id == escrow_id,
                Dispute.milestone_id.is_(None),
                Dispute.status == DisputeStatus.OPEN.value,
            )
        )
        return result.scalar_one_or_none()

    async def count_open(self, escrow_id: uuid.UUID) -> int:
        result = await self._session.execute(
            select(func.count(Dispute.id)).where(
                Dispute.escrow_id == escrow_id,
                Dispute.status == DisputeStatus.OPEN.value,
            )
        )
        return int(result.scalar_one())


class DisputeMessageRepository:
    """Append-only data access for dispute messages."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, dispute_id: uuid.UUID, author: str, body: str) -> DisputeMessage:
        message = DisputeMessage(dispute_id=dispute_id, author=author, body=body)
        self._session.add(message)
        await self._session.flush()
        return message


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        escrow_id: uuid.UUID,
        event_type: EventType,
        old_status: str | None,
        new_status: str,
        actor: str = "SYSTEM",
        milestone_id: uuid.UUID | None = None,
        tx_ref: str | None = None,
        metadata: dict | None = None,
    ) -> EscrowEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = EscrowEvent(
            escrow_id=escrow_id,
            milestone_id=milestone_id,
            event_type=event_type.value,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
            tx_ref=tx_ref,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def find_by_escrow(self, escrow_id: uuid.UUID) -> list[EscrowEvent]:
        """Fetch all events for an escrow in chronological order."""
        result = await self._session.execute(
            select(EscrowEvent)
            .where(EscrowEvent.escrow_id == escrow_id)
            .order_by(EscrowEvent.created_at.asc())
        )
        return list(result.scalars().all())


class SettlementRepository:
    """Data access for the reconciliation journal."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_tx_ref(self, tx_ref: str) -> SettlementRecord | None:
        result = await self._session.execute(
            select(SettlementRecord).where(SettlementRecord.tx_ref == tx_ref)
        )
        return result.scalar_one_or_none()

    async def is_applied(self, tx_ref: str) -> bool:
        record = await self.get_by_tx_ref(tx_ref)
        return record is not None and record.status == SettlementStatus.APPLIED.value

    async def mark_applied(self, intent: SettlementIntent) -> SettlementRecord:
        """Upsert the journal row for an intent as applied."""
        record = await self.get_by_tx_ref(intent.tx_ref)
        now = datetime.now(UTC)
        if record is None:
            record = SettlementRecord(
                tx_ref=intent.tx_ref,
                kind=intent.kind.value,
                escrow_id=intent.escrow_id,
                intent=intent.to_dict(),
                attempts=1,
            )
            self._session.add(record)
        else:
            record.attempts += 1
        record.status = SettlementStatus.APPLIED.value
        record.applied_at = now
        record.last_error = None
        await self._session.flush()
        return record

    async def record_pending(self, intent: SettlementIntent, error: str) -> SettlementRecord:
        """Journal an intent whose store mutation failed. Never downgrades an applied row."""
        record = await self.get_by_tx_ref(intent.tx_ref)
        if record is None:
            record = SettlementRecord(
                tx_ref=intent.tx_ref,
                kind=intent.kind.value,
                escrow_id=intent.escrow_id,
                intent=intent.to_dict(),
                status=SettlementStatus.PENDING.value,
                attempts=1,
                last_error=error,
            )
            self._session.add(record)
        elif record.status == SettlementStatus.PENDING.value:
            record.attempts += 1
            record.last_error = error
        await self._session.flush()
        return record

    async def mark_discarded(self, record: SettlementRecord, reason: str) -> SettlementRecord:
        record.status = SettlementStatus.DISCARDED.value
        record.last_error = reason
        await self._session.flush()
        return record

    async def has_pending_for_escrow(self, escrow_id: uuid.UUID) -> bool:
        result = await self._session.execute(
            select(SettlementRecord.id)
            .where(
                SettlementRecord.escrow_id == escrow_id,
                SettlementRecord.status == SettlementStatus.PENDING.value,
            )
            .limit(1)
        )
        return result.first() is not None

    async def list_pending(self, limit: int = 100) -> list[SettlementRecord]:
        """Oldest pending records first."""
        result = await self._session.execute(
            select(SettlementRecord)
            .where(SettlementRecord.status == SettlementStatus.PENDING.value)
            .order_by(SettlementRecord.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
