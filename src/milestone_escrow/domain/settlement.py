"""Settlement intents.

A SettlementIntent describes one ledger-backed state change: what the ledger
is asked to do and what the record store must do once the ledger commits. It
is serializable so the reconciliation journal can persist it and re-apply it
later. Amounts inside ``payload`` are decimal strings of minor units, never
floats.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import Any

from milestone_escrow.domain.enums import SettlementKind

SYSTEM_ACTOR = "SYSTEM"


@dataclass(frozen=True)
class SettlementIntent:
    """A ledger call plus the store mutation that must follow it.

    Attributes:
        kind: Which settlement this is (release, cancel, dispute, ...).
        escrow_id: Escrow the settlement belongs to (pre-generated for creates).
        actor: Address that requested the operation, or SYSTEM.
        payload: Kind-specific, JSON-safe arguments for both ledger and store.
        milestone_id: Target milestone, when the settlement has one.
        contract_ref: Ledger contract reference of the escrow.
        milestone_index: Ledger-side milestone position.
        tx_ref: Ledger transaction reference, set once the ledger commits.
    """

    kind: SettlementKind
    escrow_id: uuid.UUID
    actor: str
    payload: dict[str, Any] = field(default_factory=dict)
    milestone_id: uuid.UUID | None = None
    contract_ref: str | None = None
    milestone_index: int | None = None
    tx_ref: str | None = None

    def committed(self, ledger_ref: str) -> SettlementIntent:
        """Return a copy carrying the reference the ledger returned.

        For escrow creation the ledger returns a contract reference, which
        also serves as the transaction reference.
        """
        if self.kind is SettlementKind.CREATE_ESCROW:
            return dataclasses.replace(self, tx_ref=ledger_ref, contract_ref=ledger_ref)
        return dataclasses.replace(self, tx_ref=ledger_ref)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "escrow_id": str(self.escrow_id),
            "actor": self.actor,
            "payload": self.payload,
            "milestone_id": str(self.milestone_id) if self.milestone_id else None,
            "contract_ref": self.contract_ref,
            "milestone_index": self.milestone_index,
            "tx_ref": self.tx_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SettlementIntent:
        milestone_id = data.get("milestone_id")
        return cls(
            kind=SettlementKind(data["kind"]),
            escrow_id=uuid.UUID(data["escrow_id"]),
            actor=data["actor"],
            payload=dict(data.get("payload") or {}),
            milestone_id=uuid.UUID(milestone_id) if milestone_id else None,
            contract_ref=data.get("contract_ref"),
            milestone_index=data.get("milestone_index"),
            tx_ref=data.get("tx_ref"),
        )
