"""Tests for EscrowService: creation, release, cancellation and milestone updates.

Every test runs against a real SQLite store and an in-memory ledger, so the
full lock -> validate -> ledger -> store path is exercised.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from milestone_escrow.domain.enums import EscrowStatus, EventType, MilestoneStatus
from milestone_escrow.domain.exceptions import (
    AmountMismatchError,
    EntityNotFoundError,
    InvalidStateError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    OperationTimeoutError,
    ReconciliationPendingError,
    ReconciliationRequiredError,
    UnauthorizedError,
    ValidationError,
)
from milestone_escrow.services.escrow_service import MilestoneSpec
from tests.conftest import Harness
from tests.fakes import CLIENT, PROVIDER, STRANGER

# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_splits_total_across_milestones(self, harness: Harness) -> None:
        escrow = await harness.create_escrow(1000, ("30", "40", "30"))

        assert escrow.status == EscrowStatus.ACTIVE
        assert escrow.contract_ref.startswith("escrow-")
        assert [m.amount for m in escrow.milestones] == [300, 400, 300]
        assert [m.percentage_bps for m in escrow.milestones] == [3000, 4000, 3000]
        assert escrow.released_amount == 0
        assert escrow.remaining_amount == 1000
        assert len(harness.ledger.calls_to("create_escrow")) == 1

    @pytest.mark.asyncio
    async def test_last_milestone_takes_rounding_remainder(self, harness: Harness) -> None:
        escrow = await harness.create_escrow(100, ("33.33", "33.33", "33.34"))
        assert [m.amount for m in escrow.milestones] == [33, 33, 34]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("percentages", [("50", "49"), ("50", "51")])
    async def test_percentages_must_sum_to_100(self, harness: Harness, percentages: tuple[str, ...]) -> None:
        with pytest.raises(ValidationError, match="sum to exactly 100"):
            await harness.create_escrow(1000, percentages)
        assert harness.ledger.mutation_count == 0

    @pytest.mark.asyncio
    async def test_rejects_same_client_and_provider(self, harness: Harness) -> None:
        with pytest.raises(ValidationError):
            await harness.container.escrows.create_escrow(
                CLIENT, CLIENT, 1000, [MilestoneSpec(title="All", percentage="100")]
            )
        assert harness.ledger.mutation_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 10.5, True])
    async def test_rejects_bad_amounts(self, harness: Harness, amount: object) -> None:
        with pytest.raises(ValidationError):
            await harness.container.escrows.create_escrow(
                CLIENT, PROVIDER, amount, [MilestoneSpec(title="All", percentage="100")]  # type: ignore[arg-type]
            )

    @pytest.mark.asyncio
    async def test_ledger_failure_leaves_no_record(self, harness: Harness) -> None:
        harness.ledger.fail_next("create_escrow")
        with pytest.raises(LedgerUnavailableError):
            await harness.create_escrow()
        assert await harness.container.escrows.list_escrows_for_user(CLIENT) == []

    @pytest.mark.asyncio
    async def test_records_creation_event(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        events = await harness.container.escrows.get_events(escrow.id)
        assert [e.event_type for e in events] == [EventType.ESCROW_CREATED]
        assert events[0].actor == CLIENT


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


class TestReleaseMilestone:
    @pytest.mark.asyncio
    async def test_client_releases_milestone(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        first = escrow.milestones[0]

        updated = await harness.container.escrows.release_milestone(escrow.id, first.id, 300, CLIENT)

        assert updated.released_amount == 300
        assert updated.remaining_amount == 700
        assert updated.milestones[0].status == MilestoneStatus.COMPLETED
        assert updated.milestones[0].release_tx_ref is not None
        assert updated.status == EscrowStatus.ACTIVE
        assert harness.ledger.calls_to("release_funds") == [(escrow.contract_ref, 0, 300)]
        assert await harness.container.escrows.get_wallet_balance(PROVIDER) == 300

    @pytest.mark.asyncio
    async def test_releasing_every_milestone_completes_escrow(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        for milestone in escrow.milestones:
            await harness.container.escrows.release_milestone(escrow.id, milestone.id, milestone.amount, CLIENT)

        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.status == EscrowStatus.COMPLETED
        assert final.released_amount == 1000
        assert final.remaining_amount == 0
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_amount_must_match(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(AmountMismatchError):
            await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 299, CLIENT)
        assert harness.ledger.calls_to("release_funds") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [PROVIDER, STRANGER])
    async def test_only_client_may_release(self, harness: Harness, actor: str) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(UnauthorizedError):
            await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, actor)

    @pytest.mark.asyncio
    async def test_double_release_is_rejected(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[0]
        await harness.container.escrows.release_milestone(escrow.id, milestone.id, 300, CLIENT)

        with pytest.raises(InvalidStateError):
            await harness.container.escrows.release_milestone(escrow.id, milestone.id, 300, CLIENT)

        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.released_amount == 300
        assert len(harness.ledger.calls_to("release_funds")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_releases_pay_once(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[1]
        harness.ledger.delay("release_funds", 0.05)

        results = await asyncio.gather(
            harness.container.escrows.release_milestone(escrow.id, milestone.id, 400, CLIENT),
            harness.container.escrows.release_milestone(escrow.id, milestone.id, 400, CLIENT),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidStateError)
        assert len(harness.ledger.calls_to("release_funds")) == 1
        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.released_amount == 400

    @pytest.mark.asyncio
    async def test_unknown_milestone(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        other = await harness.create_escrow()
        with pytest.raises(EntityNotFoundError):
            await harness.container.escrows.release_milestone(escrow.id, other.milestones[0].id, 300, CLIENT)

    @pytest.mark.asyncio
    async def test_ledger_failure_changes_nothing(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        harness.ledger.fail_next("release_funds")

        with pytest.raises(LedgerUnavailableError):
            await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, CLIENT)

        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.released_amount == 0
        assert final.milestones[0].status == MilestoneStatus.PENDING
        assert await harness.container.reconciliation.pending() == []

    @pytest.mark.asyncio
    async def test_slow_ledger_times_out_without_mutation(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        harness.ledger.delay("release_funds", 1.0)

        with pytest.raises(LedgerTimeoutError):
            await harness.container.escrows.release_milestone(
                escrow.id, escrow.milestones[0].id, 300, CLIENT, timeout=0.2
            )

        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.released_amount == 0
        assert harness.ledger.calls_to("release_funds") == []

    @pytest.mark.asyncio
    async def test_busy_escrow_lock_times_out(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        async with harness.container.locks.hold(escrow.id, None):
            with pytest.raises(OperationTimeoutError):
                await harness.container.escrows.release_milestone(
                    escrow.id, escrow.milestones[0].id, 300, CLIENT, timeout=0.1
                )
        assert harness.ledger.calls_to("release_funds") == []

    @pytest.mark.asyncio
    async def test_store_failure_after_ledger_requires_reconciliation(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        harness.applier.failures = 1

        with pytest.raises(ReconciliationRequiredError) as exc_info:
            await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, CLIENT)

        assert exc_info.value.tx_ref in harness.ledger.tx_status
        pending = await harness.container.reconciliation.pending()
        assert [r.tx_ref for r in pending] == [exc_info.value.tx_ref]
        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.released_amount == 0

    @pytest.mark.asyncio
    async def test_retry_is_refused_until_reconciled(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[0]
        harness.applier.failures = 1
        with pytest.raises(ReconciliationRequiredError) as exc_info:
            await harness.container.escrows.release_milestone(escrow.id, milestone.id, 300, CLIENT)

        with pytest.raises(ReconciliationPendingError):
            await harness.container.escrows.release_milestone(escrow.id, milestone.id, 300, CLIENT)
        assert len(harness.ledger.calls_to("release_funds")) == 1
        assert harness.ledger.escrows[escrow.contract_ref].released_amount == 300

        report = await harness.container.reconciliation.sweep()
        assert report.applied == [exc_info.value.tx_ref]
        assert report.failed == {}

        released = await harness.container.escrows.release_milestone(
            escrow.id, escrow.milestones[1].id, 400, CLIENT
        )
        assert released.released_amount == 700
        assert harness.ledger.escrows[escrow.contract_ref].released_amount == 700


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancelEscrow:
    @pytest.mark.asyncio
    async def test_cancel_refunds_unreleased_milestones(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, CLIENT)

        cancelled = await harness.container.escrows.cancel_escrow(escrow.id, PROVIDER)

        assert cancelled.status == EscrowStatus.CANCELLED
        assert cancelled.released_amount == 300
        assert cancelled.refunded_amount == 700
        assert [m.status for m in cancelled.milestones] == [
            MilestoneStatus.COMPLETED,
            MilestoneStatus.CANCELLED,
            MilestoneStatus.CANCELLED,
        ]
        assert harness.ledger.calls_to("cancel_escrow") == [(escrow.contract_ref,)]

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(UnauthorizedError):
            await harness.container.escrows.cancel_escrow(escrow.id, STRANGER)

    @pytest.mark.asyncio
    async def test_cannot_cancel_twice(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        await harness.container.escrows.cancel_escrow(escrow.id, CLIENT)
        with pytest.raises(InvalidStateError):
            await harness.container.escrows.cancel_escrow(escrow.id, CLIENT)

    @pytest.mark.asyncio
    async def test_cancel_waits_for_pending_release(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        harness.applier.failures = 1
        with pytest.raises(ReconciliationRequiredError):
            await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, CLIENT)

        with pytest.raises(ReconciliationPendingError):
            await harness.container.escrows.cancel_escrow(escrow.id, CLIENT)
        assert harness.ledger.calls_to("cancel_escrow") == []
        stale = await harness.container.escrows.get_escrow(escrow.id)
        assert stale.status == EscrowStatus.ACTIVE
        assert stale.refunded_amount == 0

        await harness.container.reconciliation.sweep()
        cancelled = await harness.container.escrows.cancel_escrow(escrow.id, CLIENT)

        assert cancelled.released_amount == 300
        assert cancelled.refunded_amount == 700
        assert cancelled.milestones[0].status == MilestoneStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cannot_release_after_cancel(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        await harness.container.escrows.cancel_escrow(escrow.id, CLIENT)
        with pytest.raises(InvalidStateError):
            await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, CLIENT)


# ---------------------------------------------------------------------------
# Milestone updates
# ---------------------------------------------------------------------------


class TestMilestoneModification:
    @pytest.mark.asyncio
    async def test_request_then_approve(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[0]
        new_deadline = datetime(2030, 6, 1, tzinfo=UTC)

        requested = await harness.container.escrows.request_milestone_modification(
            escrow.id, milestone.id, PROVIDER, title="Wireframes v2", deadline=new_deadline
        )
        assert requested.modification_requested
        assert requested.proposed_title == "Wireframes v2"
        assert requested.title == "Milestone 1"

        approved = await harness.container.escrows.approve_milestone_modification(escrow.id, milestone.id, CLIENT)
        assert approved.title == "Wireframes v2"
        assert approved.deadline is not None
        assert not approved.modification_requested
        assert approved.proposed_title is None
        assert approved.amount == 300

    @pytest.mark.asyncio
    async def test_requester_cannot_approve(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = escrow.milestones[0]
        await harness.container.escrows.request_milestone_modification(
            escrow.id, milestone.id, PROVIDER, description="More pages"
        )
        with pytest.raises(UnauthorizedError):
            await harness.container.escrows.approve_milestone_modification(escrow.id, milestone.id, PROVIDER)

    @pytest.mark.asyncio
    async def test_approve_without_request(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(InvalidStateError):
            await harness.container.escrows.approve_milestone_modification(
                escrow.id, escrow.milestones[0].id, CLIENT
            )

    @pytest.mark.asyncio
    async def test_request_must_change_something(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(ValidationError):
            await harness.container.escrows.request_milestone_modification(
                escrow.id, escrow.milestones[0].id, CLIENT, title="Milestone 1"
            )
        assert harness.ledger.calls_to("request_modification") == []


class TestProviderUpdates:
    @pytest.mark.asyncio
    async def test_evidence_moves_milestone_to_evidence_submitted(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = await harness.container.escrows.add_milestone_evidence(
            escrow.id, escrow.milestones[0].id, PROVIDER, "sha256:abc", evidence_link="https://example.com/d"
        )
        assert milestone.status == MilestoneStatus.EVIDENCE_SUBMITTED
        assert milestone.evidence_hash == "sha256:abc"

        # Evidence does not block release.
        updated = await harness.container.escrows.release_milestone(escrow.id, milestone.id, 300, CLIENT)
        assert updated.released_amount == 300

    @pytest.mark.asyncio
    async def test_client_cannot_add_evidence(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        with pytest.raises(UnauthorizedError):
            await harness.container.escrows.add_milestone_evidence(
                escrow.id, escrow.milestones[0].id, CLIENT, "sha256:abc"
            )

    @pytest.mark.asyncio
    async def test_confirm_completion_never_releases(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        milestone = await harness.container.escrows.confirm_milestone_completion(
            escrow.id, escrow.milestones[0].id, PROVIDER
        )
        assert milestone.provider_confirmed_at is not None
        assert milestone.status == MilestoneStatus.PENDING
        final = await harness.container.escrows.get_escrow(escrow.id)
        assert final.released_amount == 0


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        status = await harness.container.escrows.get_status(escrow.id)
        assert status["status"] == "active"
        assert "cancel_requested" in status["allowed_events"]
        assert len(status["milestones"]) == 3
        assert "funds_released" in status["milestones"][0]["allowed_events"]

    @pytest.mark.asyncio
    async def test_list_for_either_party(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        assert [e.id for e in await harness.container.escrows.list_escrows_for_user(PROVIDER)] == [escrow.id]
        assert await harness.container.escrows.list_escrows_for_user(STRANGER) == []

    @pytest.mark.asyncio
    async def test_lookup_by_contract_ref(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        found = await harness.container.escrows.get_escrow_by_contract(escrow.contract_ref)
        assert found.id == escrow.id
        with pytest.raises(EntityNotFoundError):
            await harness.container.escrows.get_escrow_by_contract("escrow-missing")

    @pytest.mark.asyncio
    async def test_ledger_snapshot_in_sync(self, harness: Harness) -> None:
        escrow = await harness.create_escrow()
        await harness.container.escrows.release_milestone(escrow.id, escrow.milestones[0].id, 300, CLIENT)
        snapshot = await harness.container.escrows.get_ledger_snapshot(escrow.id)
        assert snapshot["in_sync"]
        assert snapshot["details"].released_amount == 300
        assert [m.status for m in snapshot["milestones"]] == ["completed", "pending", "pending"]
