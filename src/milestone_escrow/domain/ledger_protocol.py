"""Ledger and oracle collaborator protocols.

Defines the interfaces the core depends on. These are Protocols (structural
subtyping), so the JSON-RPC client, the test fakes and any future transport
just need to match the shape.

The domain layer has ZERO imports from httpx or any other transport.

Every mutating ledger call returns an opaque transaction reference once the
ledger has committed the transaction; ``create_escrow`` returns the contract
reference instead. Calls may raise LedgerUnavailableError, LedgerTimeoutError,
InsufficientFundsError or InvalidAddressError, in which case nothing was
committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from milestone_escrow.domain.enums import ConditionType, TransactionStatus


@dataclass(frozen=True)
class LedgerMilestoneSpec:
    """Milestone terms sent to the ledger when an escrow is created."""

    title: str
    description: str
    percentage_bps: int
    amount: int
    deadline: str | None = None


@dataclass(frozen=True)
class LedgerEscrowSnapshot:
    """The ledger's view of an escrow (GetEscrowDetails)."""

    contract_ref: str
    client: str
    provider: str
    total_amount: int
    released_amount: int
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerMilestoneSnapshot:
    """The ledger's view of one milestone (GetMilestones)."""

    index: int
    title: str
    amount: int
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class LedgerClient(Protocol):
    """Append-only ledger of record.

    Concrete implementations:
        - infrastructure/ledger/rpc_client.py (JSON-RPC over httpx)
    """

    async def create_escrow(
        self,
        client: str,
        provider: str,
        amount: int,
        token: str,
        milestones: list[LedgerMilestoneSpec],
    ) -> str: ...

    async def release_funds(self, contract_ref: str, milestone_index: int, amount: int) -> str: ...

    async def cancel_escrow(self, contract_ref: str) -> str: ...

    async def add_release_condition(
        self,
        contract_ref: str,
        milestone_index: int,
        condition_type: ConditionType,
        data: dict[str, Any],
    ) -> str: ...

    async def verify_condition(
        self,
        contract_ref: str,
        milestone_index: int,
        condition_index: int,
        verification: dict[str, Any],
    ) -> str: ...

    async def request_modification(
        self,
        contract_ref: str,
        milestone_index: int,
        title: str | None,
        description: str | None,
        deadline: str | None,
    ) -> str: ...

    async def approve_modification(self, contract_ref: str, milestone_index: int) -> str: ...

    async def confirm_completion(self, contract_ref: str, milestone_index: int) -> str: ...

    async def add_evidence(self, contract_ref: str, milestone_index: int, evidence_hash: str) -> str: ...

    async def create_dispute(self, contract_ref: str, milestone_index: int | None, reason: str) -> str: ...

    async def resolve_dispute(self, contract_ref: str, dispute_ref: str, favor_client: bool) -> str: ...

    async def get_balance(self, address: str) -> int: ...

    async def get_escrow_details(self, contract_ref: str) -> LedgerEscrowSnapshot | None: ...

    async def get_milestones(self, contract_ref: str) -> list[LedgerMilestoneSnapshot]: ...

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus: ...


# ---------------------------------------------------------------------------
# Oracle verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OracleVerdict:
    """Output from an oracle verifier.

    Attributes:
        is_valid: Whether the oracle evidence satisfies the condition.
        details: Human-readable explanation of the result.
        errors: Structured validation errors, if any.
    """

    is_valid: bool
    details: str = ""
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"is_valid": self.is_valid, "details": self.details, "errors": self.errors}


@runtime_checkable
class OracleVerifier(Protocol):
    """Checks oracle evidence against an oracle condition's data."""

    async def verify(self, condition_data: dict[str, Any], evidence: dict[str, Any]) -> OracleVerdict:
        """Return a verdict; never raises for bad evidence, only reports it."""
        ...
