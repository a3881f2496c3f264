"""Tests for DisputeService: opening, discussion and arbiter resolution."""

from __future__ import annotations

import pytest

from milestone_escrow.domain.enums import DisputeStatus, EscrowStatus, EventType, MilestoneStatus
from milestone_escrow.domain.exceptions import (
    ConflictingDisputeError,
    InvalidStateError,
    UnauthorizedError,
    ValidationError,
)
from tests.conftest import Harness
from tests.fakes import ARBITER, CLIENT, PROVIDER, STRANGER


class TestOpenDispute:
    @pytest.mark.asyncio
    async def test_milestone_dispute_freezes_escrow(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[0]

        dispute = await harness.container.disputes.open_dispute(
            escrow.id, CLIENT, "Late delivery", "Nothing shipped", milestone_id=milestone.id
        )

        assert dispute.status == DisputeStatus.OPEN
        assert dispute.milestone_id == milestone.id
        assert dispute.open_tx_ref is not None
        reloaded = await harness.container.escrows.get_escrow(escrow.id)
        assert reloaded.status == EscrowStatus.DISPUTED
        assert reloaded.milestones[0].status == MilestoneStatus.DISPUTED
        assert harness.ledger.calls_to("create_dispute") == [(escrow.contract_ref, 0, "Late delivery")]

        with pytest.raises(InvalidStateError):
            await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[1].id, 400, CLIENT)
        with pytest.raises(InvalidStateError):
            await harness.container.escrows.cancel_escrow(escrow.id, CLIENT)

    @pytest.mark.asyncio
    async def test_second_dispute_on_same_milestone_conflicts(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[0]
        first = await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Late", milestone_id=milestone.id)

        with pytest.raises(ConflictingDisputeError) as exc_info:
            await harness.container.disputes.open_dispute(escrow.id, PROVIDER, "Scope", milestone_id=milestone.id)
        assert exc_info.value.dispute_id == str(first.id)
        assert len(harness.ledger.calls_to("create_dispute")) == 1

    @pytest.mark.asyncio
    async def test_disputes_on_different_milestones_coexist(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Late", milestone_id=escrow.milestones[0].id)
        await harness.container.disputes.open_dispute(
            escrow.id, PROVIDER, "Unpaid", milestone_id=escrow.milestones[1].id
        )
        disputes = await harness.container.disputes.list_disputes(escrow.id)
        assert len(disputes) == 2

    @pytest.mark.asyncio
    async def test_escrow_level_dispute_conflicts(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Abandoned")

        with pytest.raises(ConflictingDisputeError):
            await harness.container.disputes.open_dispute(escrow.id, PROVIDER, "Scope creep")
        with pytest.raises(InvalidStateError):
            await harness.container.disputes.open_dispute(
                escrow.id, PROVIDER, "Unpaid", milestone_id=escrow.milestones[0].id
            )

    @pytest.mark.asyncio
    async def test_cannot_dispute_released_milestone(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[0]
        await harness.container.escrows.release_milestone(escrow.id, milestone.id, 300, CLIENT)
        with pytest.raises(InvalidStateError):
            await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Late", milestone_id=milestone.id)

    @pytest.mark.asyncio
    async def test_stranger_cannot_open(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(UnauthorizedError):
            await harness.container.disputes.open_dispute(escrow.id, STRANGER, "Spam")

    @pytest.mark.asyncio
    async def test_title_required(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(ValidationError):
            await harness.container.disputes.open_dispute(escrow.id, CLIENT, "  ")


class TestDisputeMessages:
    @pytest.mark.asyncio
    async def test_parties_discuss_open_dispute(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Abandoned")

        await harness.container.disputes.post_message(dispute.id, CLIENT, "No reply for two weeks")
        await harness.container.disputes.post_message(dispute.id, PROVIDER, "I was ill")

        reloaded = await harness.container.disputes.get_dispute(dispute.id)
        assert sorted(m.author for m in reloaded.messages) == sorted([CLIENT, PROVIDER])
        # Messages never touch the ledger.
        assert len(harness.ledger.calls) == 2

    @pytest.mark.asyncio
    async def test_stranger_cannot_post(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Abandoned")
        with pytest.raises(UnauthorizedError):
            await harness.container.disputes.post_message(dispute.id, STRANGER, "hello")

    @pytest.mark.asyncio
    async def test_cannot_post_after_resolution(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Abandoned")
        await harness.container.disputes.resolve(dispute.id, "Work continues", False, ARBITER)
        with pytest.raises(InvalidStateError):
            await harness.container.disputes.post_message(dispute.id, CLIENT, "But wait")


class TestResolveDispute:
    @pytest.mark.asyncio
    async def test_milestone_dispute_for_provider_releases(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(
            escrow.id, PROVIDER, "Unpaid", milestone_id=escrow.milestones[0].id
        )

        resolved = await harness.container.disputes.resolve(dispute.id, "Work was delivered", False, ARBITER)

        assert resolved.status == DisputeStatus.RESOLVED
        assert resolved.favor_client is False
        assert resolved.resolved_by == ARBITER
        reloaded = await harness.container.escrows.get_escrow(escrow.id)
        assert reloaded.status == EscrowStatus.ACTIVE
        assert reloaded.milestones[0].status == MilestoneStatus.COMPLETED
        assert reloaded.released_amount == 300
        assert reloaded.remaining_amount == 700

    @pytest.mark.asyncio
    async def test_milestone_dispute_for_client_refunds(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(
            escrow.id, CLIENT, "Late", milestone_id=escrow.milestones[0].id
        )

        await harness.container.disputes.resolve(dispute.id, "Never delivered", True, ARBITER)

        reloaded = await harness.container.escrows.get_escrow(escrow.id)
        assert reloaded.status == EscrowStatus.ACTIVE
        assert reloaded.milestones[0].status == MilestoneStatus.CANCELLED
        assert reloaded.refunded_amount == 300
        assert reloaded.released_amount == 0

        # The rest of the escrow proceeds and completes normally.
        for milestone in reloaded.milestones[1:]:
            await harness.container.escrows.release_milestone(escrow.id, milestone.id, milestone.amount, CLIENT)
        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.status == EscrowStatus.COMPLETED
        assert final.released_amount == 700

    @pytest.mark.asyncio
    async def test_resolving_last_open_milestone_settles_escrow(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        for milestone in escrow.milestones[1:]:
            await harness.container.escrows.release_milestone(escrow.id, milestone.id, milestone.amount, CLIENT)
        dispute = await harness.container.disputes.open_dispute(
            escrow.id, CLIENT, "Late", milestone_id=escrow.milestones[0].id
        )

        await harness.container.disputes.resolve(dispute.id, "Refund the first tranche", True, ARBITER)

        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.status == EscrowStatus.COMPLETED
        assert final.released_amount == 700
        assert final.refunded_amount == 300

    @pytest.mark.asyncio
    async def test_escrow_stays_disputed_while_another_dispute_is_open(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        first = await harness.container.disputes.open_dispute(
            escrow.id, CLIENT, "Late", milestone_id=escrow.milestones[0].id
        )
        await harness.container.disputes.open_dispute(
            escrow.id, PROVIDER, "Unpaid", milestone_id=escrow.milestones[1].id
        )

        await harness.container.disputes.resolve(first.id, "Refund", True, ARBITER)

        reloaded = await harness.container.escrows.get_escrow(escrow.id)
        assert reloaded.status == EscrowStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_escrow_dispute_for_client_cancels_everything_unreleased(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, CLIENT)
        dispute = await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Abandoned")

        await harness.container.disputes.resolve(dispute.id, "Provider walked away", True, ARBITER)

        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.status == EscrowStatus.CANCELLED
        assert final.released_amount == 300
        assert final.refunded_amount == 700
        assert [m.status for m in final.milestones] == [
            MilestoneStatus.COMPLETED,
            MilestoneStatus.CANCELLED,
            MilestoneStatus.CANCELLED,
        ]
        events = [e.event_type for e in await harness.container.escrows.get_events(escrow.id)]
        assert EventType.DISPUTE_RESOLVED_CLIENT in events
        assert EventType.ESCROW_CANCELLED in events

    @pytest.mark.asyncio
    async def test_escrow_dispute_for_provider_resumes(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(escrow.id, PROVIDER, "Client unresponsive")

        await harness.container.disputes.resolve(dispute.id, "Continue the work", False, ARBITER)

        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.status == EscrowStatus.ACTIVE
        assert all(m.status == MilestoneStatus.PENDING for m in final.milestones)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [CLIENT, PROVIDER, STRANGER])
    async def test_only_arbiters_resolve(self, harness: Harness, actor: str) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Abandoned")
        with pytest.raises(UnauthorizedError):
            await harness.container.disputes.resolve(dispute.id, "I win", True, actor)

    @pytest.mark.asyncio
    async def test_resolution_is_final(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        dispute = await harness.container.disputes.open_dispute(escrow.id, CLIENT, "Abandoned")
        await harness.container.disputes.resolve(dispute.id, "Continue", False, ARBITER)
        with pytest.raises(InvalidStateError):
            await harness.container.disputes.resolve(dispute.id, "Changed my mind", True, ARBITER)
        assert len(harness.ledger.calls_to("resolve_dispute")) == 1
