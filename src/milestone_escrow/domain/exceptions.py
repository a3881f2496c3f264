"""Domain exceptions for the milestone escrow service.

These exceptions are framework-agnostic and represent business rule violations
or collaborator failures. They are caught and translated to HTTP responses by
the API layer's middleware.

Retry semantics:
    - ValidationError / InvalidStateError / UnauthorizedError and friends:
      raised before any side effect, never retry blindly.
    - LedgerUnavailableError / LedgerTimeoutError: raised before any store
      mutation, so the whole operation is safe to retry.
    - ReconciliationRequiredError: the ledger committed but the store did not.
      Never retry the operation; hand the tx reference to the reconciliation
      service instead. Until it does, further operations on that escrow
      raise ReconciliationPendingError.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import uuid

    from milestone_escrow.domain.settlement import SettlementIntent


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Caller errors ---


class ValidationError(EscrowError):
    """Malformed input. Raised before any ledger call."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.field = field


class EntityNotFoundError(EscrowError):
    """Raised when an escrow, milestone, condition or dispute does not exist."""

    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(
            message=f"{entity} not found: {entity_id}",
            code=f"{entity.upper()}_NOT_FOUND",
        )
        self.entity = entity
        self.entity_id = str(entity_id)


class UnauthorizedError(EscrowError):
    """The acting address lacks the capability for this transition."""

    def __init__(self, actor: str, action: str) -> None:
        super().__init__(
            message=f"{actor} is not allowed to {action}",
            code="UNAUTHORIZED",
        )
        self.actor = actor
        self.action = action


# --- State errors ---


class InvalidStateError(EscrowError):
    """The requested operation is not legal from the current state."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="INVALID_STATE")


class InvalidStateTransitionError(InvalidStateError):
    """Raised when a state machine rejects an event.

    Example: completed -> dispute_opened (completed is final)
    """

    def __init__(self, entity: str, current_state: str, event: str) -> None:
        super().__init__(f"Invalid {entity} transition: {event} from {current_state}")
        self.code = "INVALID_STATE_TRANSITION"
        self.entity = entity
        self.current_state = current_state
        self.event = event


class ConflictingDisputeError(EscrowError):
    """An open dispute already occupies the milestone (or escrow-level) slot."""

    def __init__(self, escrow_id: object, milestone_id: object | None, dispute_id: object) -> None:
        scope = f"milestone {milestone_id}" if milestone_id else f"escrow {escrow_id}"
        super().__init__(
            message=f"Dispute {dispute_id} is already open for {scope}",
            code="CONFLICTING_DISPUTE",
        )
        self.dispute_id = str(dispute_id)


class AmountMismatchError(EscrowError):
    def __init__(self, expected: int, requested: int) -> None:
        super().__init__(
            message=f"Release amount {requested} does not match milestone amount {expected}",
            code="AMOUNT_MISMATCH",
        )
        self.expected = expected
        self.requested = requested


# --- Release condition errors ---


class ConditionNotYetDueError(EscrowError):
    def __init__(self, condition_id: object, release_at: str) -> None:
        super().__init__(
            message=f"Condition {condition_id} is not due until {release_at}",
            code="CONDITION_NOT_YET_DUE",
        )
        self.release_at = release_at


class OracleVerificationFailedError(EscrowError):
    def __init__(self, message: str, details: list | None = None) -> None:
        super().__init__(message=message, code="ORACLE_VERIFICATION_FAILED")
        self.details = details or []


# --- Ledger errors ---


class LedgerError(EscrowError):
    """Base exception for ledger collaborator failures."""

    def __init__(self, message: str, code: str = "LEDGER_ERROR") -> None:
        super().__init__(message=message, code=code)


class LedgerUnavailableError(LedgerError):
    def __init__(self, message: str = "Ledger is unavailable") -> None:
        super().__init__(message=message, code="LEDGER_UNAVAILABLE")


class LedgerTimeoutError(LedgerError):
    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            message=f"Ledger call {operation} timed out after {timeout:.2f}s",
            code="LEDGER_TIMEOUT",
        )
        self.operation = operation
        self.timeout = timeout


class InsufficientFundsError(LedgerError):
    def __init__(self, message: str = "Insufficient funds on the ledger") -> None:
        super().__init__(message=message, code="INSUFFICIENT_FUNDS")


class InvalidAddressError(LedgerError):
    def __init__(self, message: str = "Ledger rejected an address") -> None:
        super().__init__(message=message, code="INVALID_ADDRESS")


# --- Consistency errors ---


class ReconciliationRequiredError(EscrowError):
    """The ledger committed a settlement but the store write failed.

    The tx_ref is the recovery key; the ReconciliationService re-applies the
    intent once the ledger confirms it.
    """

    def __init__(self, intent: SettlementIntent, reason: str) -> None:
        super().__init__(
            message=(
                f"Ledger committed {intent.kind} ({intent.tx_ref}) but the store "
                f"write failed: {reason}"
            ),
            code="RECONCILIATION_REQUIRED",
        )
        self.intent = intent
        self.tx_ref = intent.tx_ref
        self.reason = reason


class ReconciliationPendingError(InvalidStateError):
    """A ledger commit for this escrow is journaled but not yet in the store.

    New operations would validate against stale state, so they are refused
    until the reconciliation sweep applies or discards the pending intent.
    """

    def __init__(self, escrow_id: uuid.UUID | str) -> None:
        self.escrow_id = str(escrow_id)
        super().__init__(
            message=f"Escrow {escrow_id} has a settlement awaiting reconciliation",
        )
        self.code = "RECONCILIATION_PENDING"


class OperationTimeoutError(EscrowError):
    """The caller's deadline expired before the operation could start."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            message=f"Deadline expired while waiting to run {operation}",
            code="OPERATION_TIMEOUT",
        )


class DuplicateOperationError(EscrowError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )
