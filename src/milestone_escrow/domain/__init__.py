"""Domain layer: escrow rules with zero framework dependencies."""

from milestone_escrow.domain.enums import (
    ConditionType,
    DisputeStatus,
    EscrowStatus,
    EventType,
    MilestoneStatus,
    SettlementKind,
)
from milestone_escrow.domain.exceptions import (
    EntityNotFoundError,
    EscrowError,
    InvalidStateError,
    InvalidStateTransitionError,
    ReconciliationRequiredError,
)
from milestone_escrow.domain.ledger_protocol import LedgerClient, OracleVerifier
from milestone_escrow.domain.settlement import SYSTEM_ACTOR, SettlementIntent
from milestone_escrow.domain.state_machine import (
    EscrowStateMachine,
    MilestoneStateMachine,
    validate_transition,
)

__all__ = [
    "ConditionType",
    "DisputeStatus",
    "EscrowStatus",
    "EventType",
    "MilestoneStatus",
    "SettlementKind",
    "EntityNotFoundError",
    "EscrowError",
    "InvalidStateError",
    "InvalidStateTransitionError",
    "ReconciliationRequiredError",
    "LedgerClient",
    "OracleVerifier",
    "SYSTEM_ACTOR",
    "SettlementIntent",
    "EscrowStateMachine",
    "MilestoneStateMachine",
    "validate_transition",
]
