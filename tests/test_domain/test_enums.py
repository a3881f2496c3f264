"""Tests for domain enumerations."""

from __future__ import annotations

from milestone_escrow.domain.enums import (
    ConditionType,
    EscrowStatus,
    MilestoneStatus,
    SettlementKind,
)


class TestEscrowStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"created", "active", "completed", "cancelled", "disputed"}
        actual = {s.value for s in EscrowStatus}
        assert actual == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(EscrowStatus.ACTIVE, str)
        assert EscrowStatus.ACTIVE == "active"


class TestMilestoneStatus:
    def test_releasable_statuses(self) -> None:
        releasable = {s for s in MilestoneStatus if s.is_releasable}
        assert releasable == {MilestoneStatus.PENDING, MilestoneStatus.EVIDENCE_SUBMITTED}

    def test_terminal_statuses(self) -> None:
        terminal = {s for s in MilestoneStatus if s.is_terminal}
        assert terminal == {MilestoneStatus.COMPLETED, MilestoneStatus.CANCELLED}

    def test_disputed_is_neither(self) -> None:
        assert not MilestoneStatus.DISPUTED.is_releasable
        assert not MilestoneStatus.DISPUTED.is_terminal


class TestConditionType:
    def test_condition_types(self) -> None:
        assert ConditionType.THIRD_PARTY == "third_party"
        assert ConditionType.TIME_BASED == "time_based"
        assert ConditionType.ORACLE == "oracle"


class TestSettlementKind:
    def test_every_ledger_operation_has_a_kind(self) -> None:
        assert len(SettlementKind) == 11
        assert SettlementKind("release_milestone") is SettlementKind.RELEASE_MILESTONE
