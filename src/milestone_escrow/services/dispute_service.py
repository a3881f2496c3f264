"""Dispute Service: opening, discussing and resolving disputes.

A dispute targets one milestone or, with no milestone, the whole escrow.
While any dispute is open the escrow is disputed, which blocks release and
cancellation. Resolution is terminal and performed by a configured arbiter:

    milestone dispute, favor_client    -> milestone refunded (cancelled)
    milestone dispute, favor_provider  -> milestone released
    escrow dispute,    favor_client    -> all unreleased milestones refunded,
                                          escrow cancelled
    escrow dispute,    favor_provider  -> escrow resumes
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from milestone_escrow.domain.enums import DisputeStatus, EscrowStatus, EventType, SettlementKind
from milestone_escrow.domain.exceptions import (
    ConflictingDisputeError,
    EntityNotFoundError,
    InvalidStateError,
    UnauthorizedError,
    ValidationError,
)
from milestone_escrow.domain.settlement import SettlementIntent
from milestone_escrow.logging_config import get_logger
from milestone_escrow.services.escrow_service import (
    find_milestone,
    load_escrow,
    require_party,
    require_releasable,
)

if TYPE_CHECKING:
    from milestone_escrow.infrastructure.database.orm_models import Dispute, DisputeMessage
    from milestone_escrow.infrastructure.database.store import RecordStore, UnitOfWork
    from milestone_escrow.services.pipeline import SettlementPipeline

logger = get_logger(__name__)


async def _load_dispute(uow: UnitOfWork, dispute_id: uuid.UUID) -> Dispute:
    dispute = await uow.disputes.get_by_id(dispute_id)
    if dispute is None:
        raise EntityNotFoundError("dispute", dispute_id)
    return dispute


class DisputeService:
    """Manages disputes over milestones and escrows."""

    def __init__(
        self,
        store: RecordStore,
        pipeline: SettlementPipeline,
        *,
        arbiters: list[str] | None = None,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._arbiters = set(arbiters or [])

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def open_dispute(
        self,
        escrow_id: uuid.UUID,
        initiator: str,
        title: str,
        description: str = "",
        milestone_id: uuid.UUID | None = None,
        *,
        timeout: float | None = None,
    ) -> Dispute:
        """Open a dispute on a milestone, or on the escrow when milestone_id is None."""
        if not title or not title.strip():
            raise ValidationError("dispute title is required", field="title")

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            require_party(escrow, initiator, "open a dispute")

            milestone_index = None
            if milestone_id is not None:
                milestone = find_milestone(escrow, milestone_id)
                existing = await uow.disputes.find_open_for_milestone(milestone.id)
                if existing is not None:
                    raise ConflictingDisputeError(escrow.id, milestone.id, existing.id)
                require_releasable(milestone)
                if escrow.status not in (EscrowStatus.ACTIVE, EscrowStatus.DISPUTED):
                    raise InvalidStateError(f"Escrow {escrow.id} is {escrow.status}")
                if await uow.disputes.find_open_escrow_level(escrow.id) is not None:
                    raise InvalidStateError(f"Escrow {escrow.id} is under an escrow-level dispute")
                milestone_index = milestone.position
            else:
                existing = await uow.disputes.find_open_escrow_level(escrow.id)
                if existing is not None:
                    raise ConflictingDisputeError(escrow.id, None, existing.id)
                if escrow.status != EscrowStatus.ACTIVE:
                    raise InvalidStateError(f"Escrow {escrow.id} is {escrow.status}, not active")

            return SettlementIntent(
                kind=SettlementKind.OPEN_DISPUTE,
                escrow_id=escrow.id,
                actor=initiator,
                payload={
                    "dispute_id": str(uuid.uuid4()),
                    "title": title,
                    "description": description,
                },
                milestone_id=milestone_id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone_index,
            )

        dispute = await self._pipeline.execute(
            escrow_id, prepare, operation="open_dispute", timeout=timeout
        )
        logger.info(
            "dispute.opened",
            dispute_id=str(dispute.id),
            escrow_id=str(escrow_id),
            milestone_id=str(milestone_id) if milestone_id else None,
            initiator=initiator,
        )
        return dispute

    # ------------------------------------------------------------------
    # Discussion (store only)
    # ------------------------------------------------------------------

    async def post_message(self, dispute_id: uuid.UUID, author: str, text: str) -> DisputeMessage:
        """Append a message to an open dispute's thread."""
        if not text or not text.strip():
            raise ValidationError("message text is required", field="text")

        async with self._store.transaction() as uow:
            dispute = await _load_dispute(uow, dispute_id)
            escrow = await load_escrow(uow, dispute.escrow_id)
            require_party(escrow, author, "post in this dispute")
            if dispute.status != DisputeStatus.OPEN:
                raise InvalidStateError(f"Dispute {dispute.id} is {dispute.status}")

            message = await uow.messages.append(dispute.id, author, text)
            await uow.events.record(
                escrow_id=escrow.id,
                milestone_id=dispute.milestone_id,
                event_type=EventType.DISPUTE_MESSAGE_POSTED,
                old_status=escrow.status,
                new_status=escrow.status,
                actor=author,
                metadata={"dispute_id": str(dispute.id), "message_id": str(message.id)},
            )

        logger.info("dispute.message_posted", dispute_id=str(dispute_id), author=author)
        return message

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        dispute_id: uuid.UUID,
        resolution: str,
        favor_client: bool,
        actor: str,
        *,
        timeout: float | None = None,
    ) -> Dispute:
        """Record an arbiter's decision and settle the disputed funds."""
        if not resolution or not resolution.strip():
            raise ValidationError("resolution text is required", field="resolution")

        async with self._store.transaction() as uow:
            escrow_id = (await _load_dispute(uow, dispute_id)).escrow_id

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            dispute = await _load_dispute(uow, dispute_id)
            if actor not in self._arbiters:
                raise UnauthorizedError(actor, "resolve disputes")
            if dispute.status != DisputeStatus.OPEN:
                raise InvalidStateError(f"Dispute {dispute.id} is already {dispute.status}")
            escrow = await load_escrow(uow, dispute.escrow_id)

            milestone_index = None
            if dispute.milestone_id is not None:
                milestone_index = find_milestone(escrow, dispute.milestone_id).position

            return SettlementIntent(
                kind=SettlementKind.RESOLVE_DISPUTE,
                escrow_id=escrow.id,
                actor=actor,
                payload={
                    "dispute_id": str(dispute.id),
                    "dispute_ref": dispute.open_tx_ref,
                    "resolution": resolution,
                    "favor_client": favor_client,
                },
                milestone_id=dispute.milestone_id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone_index,
            )

        dispute = await self._pipeline.execute(
            escrow_id, prepare, operation="resolve_dispute", timeout=timeout
        )
        logger.info(
            "dispute.resolved",
            dispute_id=str(dispute_id),
            favor_client=favor_client,
            resolved_by=actor,
        )
        return dispute

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        async with self._store.transaction() as uow:
            return await _load_dispute(uow, dispute_id)

    async def list_disputes(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID | None = None,
    ) -> list[Dispute]:
        async with self._store.transaction() as uow:
            await load_escrow(uow, escrow_id)
            if milestone_id is not None:
                return await uow.disputes.find_by_milestone(milestone_id)
            return await uow.disputes.find_by_escrow(escrow_id)
