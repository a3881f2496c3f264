"""Escrow, milestone and dispute state machine guards.

Uses python-statemachine to enforce legal transitions at the domain level.
No matter what the API or the reconciliation sweep asks for, an illegal
transition (e.g., completed -> dispute_opened) raises TransitionNotAllowed,
which services translate into InvalidStateTransitionError.

Machines are instantiated per entity at its current status and discarded
after the event fires; the persisted status column is the source of truth.

Escrow transition table:
    created    -> active       (ledger_confirmed)
    active     -> completed    (milestones_settled)
    active     -> cancelled    (cancel_requested)
    active     -> disputed     (dispute_opened)
    disputed   -> disputed     (dispute_opened, second milestone dispute)
    disputed   -> active       (dispute_resolved_continue)
    disputed   -> completed    (dispute_resolved_settled)
    disputed   -> cancelled    (dispute_resolved_refunded)

Milestone transition table:
    pending             -> evidence_submitted  (evidence_added)
    evidence_submitted  -> evidence_submitted  (evidence_added)
    pending|evidence    -> completed           (funds_released)
    pending|evidence    -> disputed            (dispute_opened)
    pending|evidence    -> cancelled           (escrow_cancelled)
    disputed            -> completed           (dispute_resolved_for_provider)
    disputed            -> cancelled           (dispute_resolved_for_client)

Dispute transition table:
    open -> resolved (resolution_recorded)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from milestone_escrow.domain.exceptions import InvalidStateTransitionError


class _GuardMachine(StateMachine):
    """Shared constructor and helpers for the domain guards."""

    EVENTS: frozenset[str] = frozenset()

    def __init__(self, current_status: str) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The persisted status value (e.g., "active").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enums)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class EscrowStateMachine(_GuardMachine):
    """Guards escrow lifecycle transitions.

    Usage:
        sm = EscrowStateMachine(current_status="active")
        sm.dispute_opened()
        sm.status  # "disputed"
    """

    # --- States ---
    CREATED = State("Created", value="created", initial=True)
    ACTIVE = State("Active", value="active")
    DISPUTED = State("Disputed", value="disputed")
    COMPLETED = State("Completed", value="completed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)

    # --- Events / Transitions ---
    ledger_confirmed = CREATED.to(ACTIVE)

    milestones_settled = ACTIVE.to(COMPLETED)
    cancel_requested = ACTIVE.to(CANCELLED)

    # Disputes
    dispute_opened = ACTIVE.to(DISPUTED) | DISPUTED.to.itself()
    dispute_resolved_continue = DISPUTED.to(ACTIVE)
    dispute_resolved_settled = DISPUTED.to(COMPLETED)
    dispute_resolved_refunded = DISPUTED.to(CANCELLED)

    EVENTS = frozenset({
        "ledger_confirmed",
        "milestones_settled",
        "cancel_requested",
        "dispute_opened",
        "dispute_resolved_continue",
        "dispute_resolved_settled",
        "dispute_resolved_refunded",
    })


class MilestoneStateMachine(_GuardMachine):
    """Guards milestone (payment tranche) transitions."""

    # --- States ---
    PENDING = State("Pending", value="pending", initial=True)
    EVIDENCE_SUBMITTED = State("EvidenceSubmitted", value="evidence_submitted")
    DISPUTED = State("Disputed", value="disputed")
    COMPLETED = State("Completed", value="completed", final=True)
    CANCELLED = State("Cancelled", value="cancelled", final=True)

    # --- Events / Transitions ---
    evidence_added = PENDING.to(EVIDENCE_SUBMITTED) | EVIDENCE_SUBMITTED.to.itself()

    funds_released = PENDING.to(COMPLETED) | EVIDENCE_SUBMITTED.to(COMPLETED)
    escrow_cancelled = PENDING.to(CANCELLED) | EVIDENCE_SUBMITTED.to(CANCELLED)

    # Disputes
    dispute_opened = PENDING.to(DISPUTED) | EVIDENCE_SUBMITTED.to(DISPUTED)
    dispute_resolved_for_provider = DISPUTED.to(COMPLETED)
    dispute_resolved_for_client = DISPUTED.to(CANCELLED)

    EVENTS = frozenset({
        "evidence_added",
        "funds_released",
        "escrow_cancelled",
        "dispute_opened",
        "dispute_resolved_for_provider",
        "dispute_resolved_for_client",
    })


class DisputeStateMachine(_GuardMachine):
    """Guards the dispute sub-state-machine. Resolution is terminal."""

    OPEN = State("Open", value="open", initial=True)
    RESOLVED = State("Resolved", value="resolved", final=True)

    resolution_recorded = OPEN.to(RESOLVED)

    EVENTS = frozenset({"resolution_recorded"})


_MACHINES: dict[str, type[_GuardMachine]] = {
    "escrow": EscrowStateMachine,
    "milestone": MilestoneStateMachine,
    "dispute": DisputeStateMachine,
}


def validate_transition(current_status: str, event_name: str, entity: str = "escrow") -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine for the entity kind, fires the named
    event, and returns the resulting status string.

    Args:
        current_status: Current persisted status value.
        event_name: The event to fire (e.g., "funds_released").
        entity: One of "escrow", "milestone", "dispute".

    Returns:
        The new status string after the transition.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status, event name or entity is invalid.
    """
    machine_cls = _MACHINES.get(entity)
    if machine_cls is None:
        raise ValueError(f"Unknown entity '{entity}'. Valid: {sorted(_MACHINES)}")

    sm = machine_cls(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_name not in machine_cls.EVENTS or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status


def fire_transition(entity: str, current_status: str, event_name: str) -> str:
    """Like validate_transition, but raises the domain InvalidStateTransitionError."""
    try:
        return validate_transition(current_status, event_name, entity=entity)
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(entity, current_status, event_name) from err


def allowed_events(entity: str, current_status: str) -> list[str]:
    """Return the events that can fire for an entity at a given status."""
    return _MACHINES[entity](current_status=current_status).get_allowed_events()
