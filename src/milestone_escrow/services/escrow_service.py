"""Escrow Service: orchestrates the escrow and milestone lifecycle.

This is the application layer that coordinates between:
    - Domain rules (authorization, state machines, money arithmetic)
    - The settlement pipeline (lock -> validate -> ledger -> store)
    - Repositories (reads)

Both REST routes and the condition/dispute services call into this
service, ensuring a single source of truth for release and cancel rules.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain import money
from milestone_escrow.domain.clock import ensure_utc, to_iso, utcnow
from milestone_escrow.domain.enums import EscrowStatus, MilestoneStatus, SettlementKind
from milestone_escrow.domain.exceptions import (
    AmountMismatchError,
    EntityNotFoundError,
    InvalidStateError,
    UnauthorizedError,
    ValidationError,
)
from milestone_escrow.domain.settlement import SYSTEM_ACTOR, SettlementIntent
from milestone_escrow.domain.state_machine import allowed_events
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from datetime import datetime

    from milestone_escrow.domain.clock import Clock
    from milestone_escrow.domain.ledger_protocol import LedgerClient
    from milestone_escrow.infrastructure.database.orm_models import (
        Escrow,
        EscrowEvent,
        Milestone,
    )
    from milestone_escrow.infrastructure.database.store import RecordStore, UnitOfWork
    from milestone_escrow.services.pipeline import SettlementPipeline

logger = get_logger(__name__)


@dataclass(frozen=True)
class MilestoneSpec:
    """Terms of one milestone at escrow creation.

    percentage is a Decimal, decimal string or int with at most two decimal
    places; floats are rejected.
    """

    title: str
    percentage: Decimal | str | int
    description: str = ""
    deadline: datetime | None = None


# ---------------------------------------------------------------------------
# Shared guards (also used by the condition and dispute services)
# ---------------------------------------------------------------------------


async def load_escrow(uow: UnitOfWork, escrow_id: uuid.UUID) -> Escrow:
    escrow = await uow.escrows.get_by_id(escrow_id)
    if escrow is None:
        raise EntityNotFoundError("escrow", escrow_id)
    return escrow


def find_milestone(escrow: Escrow, milestone_id: uuid.UUID) -> Milestone:
    for milestone in escrow.milestones:
        if milestone.id == milestone_id:
            return milestone
    raise EntityNotFoundError("milestone", milestone_id)


def require_party(escrow: Escrow, actor: str, action: str) -> None:
    if actor not in (escrow.client_address, escrow.provider_address):
        raise UnauthorizedError(actor, action)


def require_active(escrow: Escrow) -> None:
    if escrow.status != EscrowStatus.ACTIVE:
        raise InvalidStateError(f"Escrow {escrow.id} is {escrow.status}, not active")


def require_releasable(milestone: Milestone) -> None:
    if not MilestoneStatus(milestone.status).is_releasable:
        raise InvalidStateError(f"Milestone {milestone.id} is {milestone.status}")


class EscrowService:
    """Manages the escrow and milestone lifecycle."""

    def __init__(
        self,
        store: RecordStore,
        pipeline: SettlementPipeline,
        ledger: LedgerClient,
        *,
        default_token: str = "",
        default_auto_release: bool = True,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._ledger = ledger
        self._default_token = default_token
        self._default_auto_release = default_auto_release
        self._clock = clock

    # ------------------------------------------------------------------
    # Escrow Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        client: str,
        provider: str,
        total_amount: int,
        milestones: list[MilestoneSpec],
        *,
        title: str = "",
        description: str = "",
        token: str | None = None,
        auto_release: bool | None = None,
        deadline: datetime | None = None,
        timeout: float | None = None,
    ) -> Escrow:
        """Register an escrow on the ledger, then persist it with its milestones.

        Every validation runs before the ledger is contacted.
        """
        if not client or not client.strip():
            raise ValidationError("client address is required", field="client")
        if not provider or not provider.strip():
            raise ValidationError("provider address is required", field="provider")
        if client == provider:
            raise ValidationError("client and provider must differ", field="provider")
        if isinstance(total_amount, bool) or not isinstance(total_amount, int):
            raise ValidationError("total_amount must be an integer amount of minor units", field="total_amount")
        if total_amount <= 0:
            raise ValidationError("total_amount must be positive", field="total_amount")
        if not milestones:
            raise ValidationError("at least one milestone is required", field="milestones")
        for spec in milestones:
            if not spec.title or not spec.title.strip():
                raise ValidationError("milestone title is required", field="milestones")

        shares = [money.percentage_to_bps(spec.percentage) for spec in milestones]
        amounts = money.split_by_bps(total_amount, shares)

        escrow_id = uuid.uuid4()
        intent = SettlementIntent(
            kind=SettlementKind.CREATE_ESCROW,
            escrow_id=escrow_id,
            actor=client,
            payload={
                "title": title,
                "description": description,
                "client": client,
                "provider": provider,
                "total_amount": str(total_amount),
                "token": token if token is not None else self._default_token,
                "auto_release": self._default_auto_release if auto_release is None else auto_release,
                "deadline": to_iso(deadline),
                "milestones": [
                    {
                        "id": str(uuid.uuid4()),
                        "title": spec.title,
                        "description": spec.description,
                        "percentage_bps": bps,
                        "amount": str(amount),
                        "deadline": to_iso(spec.deadline),
                    }
                    for spec, bps, amount in zip(milestones, shares, amounts, strict=True)
                ],
            },
        )

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            return intent

        escrow = await self._pipeline.execute(
            escrow_id, prepare, operation="create_escrow", timeout=timeout
        )
        logger.info(
            "escrow.created",
            escrow_id=str(escrow.id),
            contract_ref=escrow.contract_ref,
            total_amount=str(total_amount),
        )
        return escrow

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_milestone(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        amount: int,
        actor: str,
        *,
        timeout: float | None = None,
    ) -> Escrow:
        """Release one milestone's funds to the provider.

        The client may release explicitly; the system may release only once
        every release condition is met.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("amount must be an integer amount of minor units", field="amount")

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            if actor not in (escrow.client_address, SYSTEM_ACTOR):
                raise UnauthorizedError(actor, "release milestone funds")
            require_active(escrow)
            require_releasable(milestone)

            conditions = milestone.conditions
            if conditions:
                unmet = [c for c in conditions if not c.met]
                if unmet:
                    raise InvalidStateError(
                        f"Milestone {milestone.id} has {len(unmet)} unmet release condition(s)"
                    )
            elif actor != escrow.client_address:
                raise UnauthorizedError(actor, "release a milestone without conditions")

            if amount != milestone.amount:
                raise AmountMismatchError(milestone.amount, amount)

            return SettlementIntent(
                kind=SettlementKind.RELEASE_MILESTONE,
                escrow_id=escrow.id,
                actor=actor,
                payload={"amount": str(amount)},
                milestone_id=milestone.id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone.position,
            )

        escrow = await self._pipeline.execute(
            escrow_id, prepare, operation="release_milestone", timeout=timeout
        )
        logger.info(
            "escrow.milestone_released",
            escrow_id=str(escrow_id),
            milestone_id=str(milestone_id),
            amount=str(amount),
            actor=actor,
        )
        return escrow

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_escrow(
        self,
        escrow_id: uuid.UUID,
        actor: str,
        *,
        timeout: float | None = None,
    ) -> Escrow:
        """Refund every unreleased milestone to the client. Released funds stay released."""

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            require_party(escrow, actor, "cancel the escrow")
            require_active(escrow)
            if escrow.remaining_amount <= 0:
                raise InvalidStateError(f"Escrow {escrow.id} has no unreleased funds")
            return SettlementIntent(
                kind=SettlementKind.CANCEL_ESCROW,
                escrow_id=escrow.id,
                actor=actor,
                payload={"refund_amount": str(escrow.remaining_amount)},
                contract_ref=escrow.contract_ref,
            )

        escrow = await self._pipeline.execute(
            escrow_id, prepare, operation="cancel_escrow", timeout=timeout
        )
        logger.info(
            "escrow.cancelled",
            escrow_id=str(escrow_id),
            refunded_amount=str(escrow.refunded_amount),
            actor=actor,
        )
        return escrow

    # ------------------------------------------------------------------
    # Milestone modification (two-phase)
    # ------------------------------------------------------------------

    async def request_milestone_modification(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        *,
        title: str | None = None,
        description: str | None = None,
        deadline: datetime | None = None,
        timeout: float | None = None,
    ) -> Milestone:
        """Propose new title/description/deadline; the counterparty must approve."""

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            require_party(escrow, actor, "request a milestone modification")
            require_active(escrow)
            require_releasable(milestone)
            if milestone.modification_requested:
                raise InvalidStateError(f"Milestone {milestone.id} already has a pending modification")

            changes: dict[str, Any] = {}
            if title is not None and title != milestone.title:
                if not title.strip():
                    raise ValidationError("title must not be blank", field="title")
                changes["title"] = title
            if description is not None and description != milestone.description:
                changes["description"] = description
            if deadline is not None and (
                milestone.deadline is None or ensure_utc(deadline) != ensure_utc(milestone.deadline)
            ):
                changes["deadline"] = to_iso(deadline)
            if not changes:
                raise ValidationError("modification request changes nothing")

            return SettlementIntent(
                kind=SettlementKind.REQUEST_MODIFICATION,
                escrow_id=escrow.id,
                actor=actor,
                payload={**changes, "requested_at": to_iso(self._clock())},
                milestone_id=milestone.id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone.position,
            )

        milestone = await self._pipeline.execute(
            escrow_id, prepare, operation="request_modification", timeout=timeout
        )
        logger.info("escrow.modification_requested", milestone_id=str(milestone_id), actor=actor)
        return milestone

    async def approve_milestone_modification(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        *,
        timeout: float | None = None,
    ) -> Milestone:
        """Apply a pending modification. The requester cannot approve their own request."""

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            require_party(escrow, actor, "approve a milestone modification")
            if not milestone.modification_requested:
                raise InvalidStateError(f"Milestone {milestone.id} has no pending modification")
            if milestone.modification_requested_by == actor:
                raise UnauthorizedError(actor, "approve their own modification request")
            require_active(escrow)
            require_releasable(milestone)
            return SettlementIntent(
                kind=SettlementKind.APPROVE_MODIFICATION,
                escrow_id=escrow.id,
                actor=actor,
                payload={"deadline": to_iso(milestone.proposed_deadline)},
                milestone_id=milestone.id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone.position,
            )

        milestone = await self._pipeline.execute(
            escrow_id, prepare, operation="approve_modification", timeout=timeout
        )
        logger.info("escrow.modification_approved", milestone_id=str(milestone_id), actor=actor)
        return milestone

    # ------------------------------------------------------------------
    # Provider updates
    # ------------------------------------------------------------------

    async def confirm_milestone_completion(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        *,
        timeout: float | None = None,
    ) -> Milestone:
        """Provider signals the work is done. Never releases funds."""

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            if actor != escrow.provider_address:
                raise UnauthorizedError(actor, "confirm milestone completion")
            require_active(escrow)
            require_releasable(milestone)
            return SettlementIntent(
                kind=SettlementKind.CONFIRM_COMPLETION,
                escrow_id=escrow.id,
                actor=actor,
                payload={"confirmed_at": to_iso(self._clock())},
                milestone_id=milestone.id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone.position,
            )

        return await self._pipeline.execute(
            escrow_id, prepare, operation="confirm_completion", timeout=timeout
        )

    async def add_milestone_evidence(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        evidence_hash: str,
        *,
        evidence_link: str | None = None,
        timeout: float | None = None,
    ) -> Milestone:
        """Provider attaches a hash (and optional link) of delivered work."""
        if not evidence_hash or not evidence_hash.strip():
            raise ValidationError("evidence_hash is required", field="evidence_hash")

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            if actor != escrow.provider_address:
                raise UnauthorizedError(actor, "add milestone evidence")
            require_active(escrow)
            require_releasable(milestone)
            return SettlementIntent(
                kind=SettlementKind.ADD_EVIDENCE,
                escrow_id=escrow.id,
                actor=actor,
                payload={
                    "evidence_hash": evidence_hash,
                    "evidence_link": evidence_link,
                    "submitted_at": to_iso(self._clock()),
                },
                milestone_id=milestone.id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone.position,
            )

        milestone = await self._pipeline.execute(
            escrow_id, prepare, operation="add_evidence", timeout=timeout
        )
        logger.info("escrow.evidence_added", milestone_id=str(milestone_id), evidence_hash=evidence_hash)
        return milestone

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: uuid.UUID) -> Escrow:
        async with self._store.transaction() as uow:
            return await load_escrow(uow, escrow_id)

    async def get_escrow_by_contract(self, contract_ref: str) -> Escrow:
        async with self._store.transaction() as uow:
            escrow = await uow.escrows.find_by_contract_ref(contract_ref)
        if escrow is None:
            raise EntityNotFoundError("escrow", contract_ref)
        return escrow

    async def list_escrows_for_user(
        self,
        address: str,
        status: EscrowStatus | None = None,
    ) -> list[Escrow]:
        async with self._store.transaction() as uow:
            return await uow.escrows.find_by_user(address, status)

    async def get_milestones(self, escrow_id: uuid.UUID) -> list[Milestone]:
        async with self._store.transaction() as uow:
            await load_escrow(uow, escrow_id)
            return await uow.milestones.find_by_escrow(escrow_id)

    async def get_status(self, escrow_id: uuid.UUID) -> dict[str, Any]:
        """Escrow status, balances and the events each state machine would accept next."""
        escrow = await self.get_escrow(escrow_id)
        return {
            "escrow_id": str(escrow.id),
            "status": escrow.status,
            "total_amount": escrow.total_amount,
            "released_amount": escrow.released_amount,
            "remaining_amount": escrow.remaining_amount,
            "refunded_amount": escrow.refunded_amount,
            "allowed_events": allowed_events("escrow", escrow.status),
            "milestones": [
                {
                    "milestone_id": str(m.id),
                    "position": m.position,
                    "status": m.status,
                    "allowed_events": allowed_events("milestone", m.status),
                }
                for m in escrow.milestones
            ],
        }

    async def get_events(self, escrow_id: uuid.UUID) -> list[EscrowEvent]:
        """Get the audit trail."""
        async with self._store.transaction() as uow:
            await load_escrow(uow, escrow_id)
            return await uow.events.find_by_escrow(escrow_id)

    async def get_wallet_balance(self, address: str) -> int:
        return await self._ledger.get_balance(address)

    async def get_ledger_snapshot(self, escrow_id: uuid.UUID) -> dict[str, Any]:
        """The ledger's view of an escrow next to the store's."""
        escrow = await self.get_escrow(escrow_id)
        details = await self._ledger.get_escrow_details(escrow.contract_ref)
        milestones = await self._ledger.get_milestones(escrow.contract_ref)
        return {
            "escrow_id": str(escrow.id),
            "contract_ref": escrow.contract_ref,
            "details": details,
            "milestones": milestones,
            "store_released_amount": escrow.released_amount,
            "in_sync": details is not None and details.released_amount == escrow.released_amount,
        }
