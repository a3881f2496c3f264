"""Domain enumerations for the milestone escrow service.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow agreement.

    CREATED only exists inside the state machine: an escrow is persisted
    after the ledger confirms it, so stored rows start at ACTIVE.
    See domain/state_machine.py for the transition table.
    """

    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class MilestoneStatus(enum.StrEnum):
    """Lifecycle states of a single payment tranche."""

    PENDING = "pending"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"

    @property
    def is_releasable(self) -> bool:
        return self in (MilestoneStatus.PENDING, MilestoneStatus.EVIDENCE_SUBMITTED)

    @property
    def is_terminal(self) -> bool:
        return self in (MilestoneStatus.COMPLETED, MilestoneStatus.CANCELLED)


class ConditionType(enum.StrEnum):
    """Kinds of release conditions gating automatic release."""

    THIRD_PARTY = "third_party"
    TIME_BASED = "time_based"
    ORACLE = "oracle"


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class SettlementKind(enum.StrEnum):
    """Ledger-backed operations whose store mutation may need reconciliation."""

    CREATE_ESCROW = "create_escrow"
    RELEASE_MILESTONE = "release_milestone"
    CANCEL_ESCROW = "cancel_escrow"
    ADD_CONDITION = "add_condition"
    VERIFY_CONDITION = "verify_condition"
    REQUEST_MODIFICATION = "request_modification"
    APPROVE_MODIFICATION = "approve_modification"
    CONFIRM_COMPLETION = "confirm_completion"
    ADD_EVIDENCE = "add_evidence"
    OPEN_DISPUTE = "open_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"


class SettlementStatus(enum.StrEnum):
    """State of a row in the reconciliation journal."""

    PENDING = "pending"
    APPLIED = "applied"
    DISCARDED = "discarded"


class TransactionStatus(enum.StrEnum):
    """Ledger-side status of a submitted transaction."""

    COMMITTED = "committed"
    PENDING = "pending"
    FAILED = "failed"
    UNKNOWN = "unknown"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the escrow_events table.

    Every store mutation produces at least one event. The table is
    append-only and doubles as the forensic trail for disputes.
    """

    # Lifecycle events
    ESCROW_CREATED = "ESCROW_CREATED"
    ESCROW_COMPLETED = "ESCROW_COMPLETED"
    ESCROW_CANCELLED = "ESCROW_CANCELLED"

    # Milestone events
    MILESTONE_RELEASED = "MILESTONE_RELEASED"
    MILESTONE_REFUNDED = "MILESTONE_REFUNDED"
    EVIDENCE_ADDED = "EVIDENCE_ADDED"
    COMPLETION_CONFIRMED = "COMPLETION_CONFIRMED"
    MODIFICATION_REQUESTED = "MODIFICATION_REQUESTED"
    MODIFICATION_APPROVED = "MODIFICATION_APPROVED"

    # Release condition events
    CONDITION_ADDED = "CONDITION_ADDED"
    CONDITION_MET = "CONDITION_MET"

    # Dispute events
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_MESSAGE_POSTED = "DISPUTE_MESSAGE_POSTED"
    DISPUTE_RESOLVED_CLIENT = "DISPUTE_RESOLVED_CLIENT"
    DISPUTE_RESOLVED_PROVIDER = "DISPUTE_RESOLVED_PROVIDER"
