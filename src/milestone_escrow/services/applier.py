"""Settlement applier: the store half of every ledger-backed operation.

Given a SettlementIntent that the ledger has committed, mutate the records
inside the caller's transaction. Both the live settlement pipeline and the
reconciliation sweep use this class, so a replayed intent produces exactly
the same rows as the original attempt.

Each apply:
    1. Returns early if the journal already shows the tx_ref as applied.
    2. Locks the escrow row FOR UPDATE.
    3. Fires the state machine events for every status it changes.
    4. Writes audit events.
    5. Marks the tx_ref as applied in the same transaction.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from milestone_escrow.domain.clock import parse_iso, utcnow
from milestone_escrow.domain.enums import (
    ConditionType,
    DisputeStatus,
    EscrowStatus,
    EventType,
    MilestoneStatus,
    SettlementKind,
)
from milestone_escrow.domain.exceptions import EntityNotFoundError, InvalidStateError
from milestone_escrow.domain.state_machine import fire_transition
from milestone_escrow.infrastructure.database.orm_models import (
    Dispute,
    Escrow,
    Milestone,
    ReleaseCondition,
)
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from milestone_escrow.domain.clock import Clock
    from milestone_escrow.domain.settlement import SettlementIntent
    from milestone_escrow.infrastructure.database.store import UnitOfWork

logger = get_logger(__name__)


def _opt_datetime(value: str | None) -> datetime | None:
    return parse_iso(value) if value else None


class SettlementApplier:
    """Applies committed settlement intents to the record store."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._handlers: dict[SettlementKind, Callable[[UnitOfWork, SettlementIntent], Awaitable[Any]]] = {
            SettlementKind.CREATE_ESCROW: self._create_escrow,
            SettlementKind.RELEASE_MILESTONE: self._release_milestone,
            SettlementKind.CANCEL_ESCROW: self._cancel_escrow,
            SettlementKind.ADD_CONDITION: self._add_condition,
            SettlementKind.VERIFY_CONDITION: self._verify_condition,
            SettlementKind.REQUEST_MODIFICATION: self._request_modification,
            SettlementKind.APPROVE_MODIFICATION: self._approve_modification,
            SettlementKind.CONFIRM_COMPLETION: self._confirm_completion,
            SettlementKind.ADD_EVIDENCE: self._add_evidence,
            SettlementKind.OPEN_DISPUTE: self._open_dispute,
            SettlementKind.RESOLVE_DISPUTE: self._resolve_dispute,
        }

    async def apply(self, uow: UnitOfWork, intent: SettlementIntent) -> Any:
        """Apply an intent; returns the primary entity it changed, or None if already applied."""
        if not intent.tx_ref:
            raise ValueError("cannot apply an intent without a ledger tx_ref")
        if await uow.settlements.is_applied(intent.tx_ref):
            logger.info("settlement.already_applied", tx_ref=intent.tx_ref, kind=intent.kind.value)
            return None

        result = await self._handlers[intent.kind](uow, intent)
        await uow.settlements.mark_applied(intent)
        logger.info(
            "settlement.applied",
            tx_ref=intent.tx_ref,
            kind=intent.kind.value,
            escrow_id=str(intent.escrow_id),
        )
        return result

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    async def _locked_escrow(self, uow: UnitOfWork, escrow_id: uuid.UUID) -> Escrow:
        escrow = await uow.escrows.get_for_update(escrow_id)
        if escrow is None:
            raise EntityNotFoundError("escrow", escrow_id)
        return escrow

    @staticmethod
    def _milestone(escrow: Escrow, milestone_id: uuid.UUID | None) -> Milestone:
        for milestone in escrow.milestones:
            if milestone.id == milestone_id:
                return milestone
        raise EntityNotFoundError("milestone", milestone_id)

    # ------------------------------------------------------------------
    # Shared mutations
    # ------------------------------------------------------------------

    async def _release_funds(
        self,
        uow: UnitOfWork,
        escrow: Escrow,
        milestone: Milestone,
        intent: SettlementIntent,
        event_name: str,
    ) -> None:
        """Mark a milestone released and move its amount to released_amount."""
        milestone.status = fire_transition("milestone", milestone.status, event_name)
        milestone.completed_at = self._clock()
        milestone.release_tx_ref = intent.tx_ref
        escrow.released_amount += milestone.amount
        escrow.remaining_amount -= milestone.amount

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            event_type=EventType.MILESTONE_RELEASED,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={"amount": str(milestone.amount), "position": milestone.position},
        )

    async def _refund_milestone(
        self,
        uow: UnitOfWork,
        escrow: Escrow,
        milestone: Milestone,
        intent: SettlementIntent,
        event_name: str,
    ) -> None:
        """Cancel a milestone; its amount stays in remaining_amount and counts as refunded."""
        milestone.status = fire_transition("milestone", milestone.status, event_name)
        escrow.refunded_amount += milestone.amount

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            event_type=EventType.MILESTONE_REFUNDED,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={"amount": str(milestone.amount), "position": milestone.position},
        )

    async def _transition_escrow(
        self,
        uow: UnitOfWork,
        escrow: Escrow,
        event_name: str,
        event_type: EventType,
        intent: SettlementIntent,
        metadata: dict | None = None,
    ) -> None:
        old_status = escrow.status
        escrow.status = fire_transition("escrow", old_status, event_name)
        if escrow.status == EscrowStatus.COMPLETED:
            escrow.completed_at = self._clock()
        await uow.events.record(
            escrow_id=escrow.id,
            event_type=event_type,
            old_status=old_status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata=metadata,
        )

    async def _settle_if_done(self, uow: UnitOfWork, escrow: Escrow, intent: SettlementIntent) -> None:
        """Complete an active escrow once every milestone is terminal."""
        statuses = [MilestoneStatus(m.status) for m in escrow.milestones]
        if escrow.status != EscrowStatus.ACTIVE or not all(s.is_terminal for s in statuses):
            return
        if MilestoneStatus.COMPLETED in statuses:
            await self._transition_escrow(
                uow, escrow, "milestones_settled", EventType.ESCROW_COMPLETED, intent
            )

    # ------------------------------------------------------------------
    # Escrow lifecycle
    # ------------------------------------------------------------------

    async def _create_escrow(self, uow: UnitOfWork, intent: SettlementIntent) -> Escrow:
        existing = await uow.escrows.get_by_id(intent.escrow_id)
        if existing is not None:
            return existing

        p = intent.payload
        total = int(p["total_amount"])
        escrow = Escrow(
            id=intent.escrow_id,
            title=p.get("title", ""),
            description=p.get("description", ""),
            client_address=p["client"],
            provider_address=p["provider"],
            contract_ref=intent.contract_ref,
            token_address=p.get("token", ""),
            total_amount=total,
            released_amount=0,
            remaining_amount=total,
            refunded_amount=0,
            status=fire_transition("escrow", EscrowStatus.CREATED.value, "ledger_confirmed"),
            auto_release=bool(p.get("auto_release", True)),
            deadline=_opt_datetime(p.get("deadline")),
            milestones=[
                Milestone(
                    id=uuid.UUID(m["id"]),
                    position=position,
                    title=m["title"],
                    description=m.get("description", ""),
                    percentage_bps=int(m["percentage_bps"]),
                    amount=int(m["amount"]),
                    status=MilestoneStatus.PENDING.value,
                    deadline=_opt_datetime(m.get("deadline")),
                    conditions=[],
                )
                for position, m in enumerate(p["milestones"])
            ],
        )
        await uow.escrows.create(escrow)

        await uow.events.record(
            escrow_id=escrow.id,
            event_type=EventType.ESCROW_CREATED,
            old_status=None,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={
                "contract_ref": intent.contract_ref,
                "total_amount": str(total),
                "milestones": len(escrow.milestones),
            },
        )
        return escrow

    async def _release_milestone(self, uow: UnitOfWork, intent: SettlementIntent) -> Escrow:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        milestone = self._milestone(escrow, intent.milestone_id)
        if escrow.status != EscrowStatus.ACTIVE:
            raise InvalidStateError(f"Escrow {escrow.id} is {escrow.status}, not active")

        await self._release_funds(uow, escrow, milestone, intent, "funds_released")
        await self._settle_if_done(uow, escrow, intent)
        return escrow

    async def _cancel_escrow(self, uow: UnitOfWork, intent: SettlementIntent) -> Escrow:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        old_status = escrow.status
        escrow.status = fire_transition("escrow", old_status, "cancel_requested")
        cancelled = []
        for milestone in escrow.milestones:
            if MilestoneStatus(milestone.status).is_releasable:
                milestone.status = fire_transition("milestone", milestone.status, "escrow_cancelled")
                cancelled.append(milestone.position)
        escrow.refunded_amount = escrow.remaining_amount

        await uow.events.record(
            escrow_id=escrow.id,
            event_type=EventType.ESCROW_CANCELLED,
            old_status=old_status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={
                "refunded_amount": str(escrow.refunded_amount),
                "cancelled_milestones": cancelled,
            },
        )
        return escrow

    # ------------------------------------------------------------------
    # Release conditions
    # ------------------------------------------------------------------

    async def _add_condition(self, uow: UnitOfWork, intent: SettlementIntent) -> ReleaseCondition:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        milestone = self._milestone(escrow, intent.milestone_id)
        p = intent.payload

        condition = ReleaseCondition(
            id=uuid.UUID(p["condition_id"]),
            milestone_id=milestone.id,
            position=int(p["position"]),
            condition_type=ConditionType(p["condition_type"]).value,
            data=p["data"],
            met=False,
        )
        await uow.conditions.create(condition)

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            event_type=EventType.CONDITION_ADDED,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={"condition_id": p["condition_id"], "condition_type": p["condition_type"]},
        )
        return condition

    async def _verify_condition(self, uow: UnitOfWork, intent: SettlementIntent) -> ReleaseCondition:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        p = intent.payload
        condition = await uow.conditions.get_by_id(uuid.UUID(p["condition_id"]))
        if condition is None:
            raise EntityNotFoundError("condition", p["condition_id"])
        if condition.met:
            return condition

        condition.met = True
        condition.verified_at = parse_iso(p["verified_at"])
        condition.verified_by = p["verifier"]
        condition.verify_tx_ref = intent.tx_ref

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=condition.milestone_id,
            event_type=EventType.CONDITION_MET,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=p["verifier"],
            tx_ref=intent.tx_ref,
            metadata={"condition_id": p["condition_id"], "condition_type": condition.condition_type},
        )
        return condition

    # ------------------------------------------------------------------
    # Milestone updates (never touch totals)
    # ------------------------------------------------------------------

    async def _request_modification(self, uow: UnitOfWork, intent: SettlementIntent) -> Milestone:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        milestone = self._milestone(escrow, intent.milestone_id)
        if milestone.modification_requested:
            raise InvalidStateError(f"Milestone {milestone.id} already has a pending modification")
        p = intent.payload

        milestone.modification_requested = True
        milestone.modification_requested_by = intent.actor
        milestone.modification_requested_at = parse_iso(p["requested_at"])
        milestone.proposed_title = p.get("title")
        milestone.proposed_description = p.get("description")
        milestone.proposed_deadline = _opt_datetime(p.get("deadline"))

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            event_type=EventType.MODIFICATION_REQUESTED,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={k: p.get(k) for k in ("title", "description", "deadline") if p.get(k) is not None},
        )
        return milestone

    async def _approve_modification(self, uow: UnitOfWork, intent: SettlementIntent) -> Milestone:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        milestone = self._milestone(escrow, intent.milestone_id)
        if not milestone.modification_requested:
            raise InvalidStateError(f"Milestone {milestone.id} has no pending modification")

        changes: dict[str, Any] = {}
        if milestone.proposed_title is not None:
            milestone.title = milestone.proposed_title
            changes["title"] = milestone.title
        if milestone.proposed_description is not None:
            milestone.description = milestone.proposed_description
            changes["description"] = milestone.description
        if milestone.proposed_deadline is not None:
            milestone.deadline = milestone.proposed_deadline
            changes["deadline"] = intent.payload.get("deadline")

        requested_by = milestone.modification_requested_by
        milestone.modification_requested = False
        milestone.modification_requested_by = None
        milestone.modification_requested_at = None
        milestone.proposed_title = None
        milestone.proposed_description = None
        milestone.proposed_deadline = None

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            event_type=EventType.MODIFICATION_APPROVED,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={"requested_by": requested_by, "changes": changes},
        )
        return milestone

    async def _confirm_completion(self, uow: UnitOfWork, intent: SettlementIntent) -> Milestone:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        milestone = self._milestone(escrow, intent.milestone_id)
        milestone.provider_confirmed_at = parse_iso(intent.payload["confirmed_at"])

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            event_type=EventType.COMPLETION_CONFIRMED,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
        )
        return milestone

    async def _add_evidence(self, uow: UnitOfWork, intent: SettlementIntent) -> Milestone:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        milestone = self._milestone(escrow, intent.milestone_id)
        p = intent.payload

        milestone.status = fire_transition("milestone", milestone.status, "evidence_added")
        milestone.evidence_hash = p["evidence_hash"]
        milestone.evidence_link = p.get("evidence_link")
        milestone.evidence_submitted_at = parse_iso(p["submitted_at"])

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            event_type=EventType.EVIDENCE_ADDED,
            old_status=escrow.status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={"evidence_hash": p["evidence_hash"]},
        )
        return milestone

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def _open_dispute(self, uow: UnitOfWork, intent: SettlementIntent) -> Dispute:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        p = intent.payload

        dispute = Dispute(
            id=uuid.UUID(p["dispute_id"]),
            escrow_id=escrow.id,
            milestone_id=intent.milestone_id,
            initiator=intent.actor,
            title=p["title"],
            description=p.get("description", ""),
            status=DisputeStatus.OPEN.value,
            open_tx_ref=intent.tx_ref,
            messages=[],
        )
        if intent.milestone_id is not None:
            milestone = self._milestone(escrow, intent.milestone_id)
            milestone.status = fire_transition("milestone", milestone.status, "dispute_opened")

        old_status = escrow.status
        escrow.status = fire_transition("escrow", old_status, "dispute_opened")
        await uow.disputes.create(dispute)

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=intent.milestone_id,
            event_type=EventType.DISPUTE_OPENED,
            old_status=old_status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={"dispute_id": p["dispute_id"], "title": p["title"]},
        )
        return dispute

    async def _resolve_dispute(self, uow: UnitOfWork, intent: SettlementIntent) -> Dispute:
        escrow = await self._locked_escrow(uow, intent.escrow_id)
        p = intent.payload
        dispute = await uow.disputes.get_by_id(uuid.UUID(p["dispute_id"]))
        if dispute is None:
            raise EntityNotFoundError("dispute", p["dispute_id"])

        favor_client = bool(p["favor_client"])
        dispute.status = fire_transition("dispute", dispute.status, "resolution_recorded")
        dispute.resolution = p["resolution"]
        dispute.favor_client = favor_client
        dispute.resolved_by = intent.actor
        dispute.resolved_at = self._clock()
        dispute.resolve_tx_ref = intent.tx_ref
        await uow.session.flush()

        old_status = escrow.status
        event_type = (
            EventType.DISPUTE_RESOLVED_CLIENT if favor_client else EventType.DISPUTE_RESOLVED_PROVIDER
        )

        if dispute.milestone_id is not None:
            milestone = self._milestone(escrow, dispute.milestone_id)
            if favor_client:
                await self._refund_milestone(
                    uow, escrow, milestone, intent, "dispute_resolved_for_client"
                )
            else:
                await self._release_funds(
                    uow, escrow, milestone, intent, "dispute_resolved_for_provider"
                )
        elif favor_client:
            for milestone in escrow.milestones:
                if MilestoneStatus(milestone.status).is_releasable:
                    await self._refund_milestone(uow, escrow, milestone, intent, "escrow_cancelled")

        if await uow.disputes.count_open(escrow.id) == 0:
            escrow.status = fire_transition("escrow", old_status, self._resolution_event(escrow, dispute))
            if escrow.status == EscrowStatus.COMPLETED:
                escrow.completed_at = self._clock()
            if escrow.status == EscrowStatus.CANCELLED:
                escrow.refunded_amount = escrow.remaining_amount

        await uow.events.record(
            escrow_id=escrow.id,
            milestone_id=dispute.milestone_id,
            event_type=event_type,
            old_status=old_status,
            new_status=escrow.status,
            actor=intent.actor,
            tx_ref=intent.tx_ref,
            metadata={"dispute_id": str(dispute.id), "resolution": dispute.resolution},
        )
        if escrow.status != old_status and escrow.status in (EscrowStatus.COMPLETED, EscrowStatus.CANCELLED):
            await uow.events.record(
                escrow_id=escrow.id,
                event_type=(
                    EventType.ESCROW_COMPLETED
                    if escrow.status == EscrowStatus.COMPLETED
                    else EventType.ESCROW_CANCELLED
                ),
                old_status=old_status,
                new_status=escrow.status,
                actor=intent.actor,
                tx_ref=intent.tx_ref,
            )
        return dispute

    @staticmethod
    def _resolution_event(escrow: Escrow, dispute: Dispute) -> str:
        """Pick the escrow event once no dispute remains open."""
        if dispute.is_escrow_level and dispute.favor_client:
            return "dispute_resolved_refunded"
        statuses = [MilestoneStatus(m.status) for m in escrow.milestones]
        if all(s.is_terminal for s in statuses):
            if MilestoneStatus.COMPLETED in statuses:
                return "dispute_resolved_settled"
            return "dispute_resolved_refunded"
        return "dispute_resolved_continue"
