"""Pydantic schemas for the escrow API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to keep the API and database layers apart.

Amounts cross the API as decimal strings in display units ("250.00") and are
converted to integer minor units with the configured token decimals. Response
models take the decimals from the validation context:

    EscrowResponse.model_validate(escrow, context={"decimals": 6})
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from milestone_escrow.domain.enums import ConditionType
from milestone_escrow.domain.money import bps_to_percentage, format_amount


def _display(value: Any, info: ValidationInfo) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        decimals = (info.context or {}).get("decimals", 0)
        return format_amount(value, decimals)
    return value


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class MilestoneInput(BaseModel):
    """One milestone of a new escrow."""

    title: str = Field(..., min_length=1, max_length=200)
    percentage: Decimal = Field(
        ...,
        gt=0,
        le=100,
        description="Share of the total amount, up to two decimal places",
        examples=["30", "33.33"],
    )
    description: str = Field(default="", max_length=5000)
    deadline: datetime | None = None


class CreateEscrowRequest(BaseModel):
    """Request body for creating a new milestone escrow."""

    provider: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Ledger address of the provider who receives released funds",
    )
    total_amount: Decimal = Field(
        ...,
        gt=0,
        description="Escrowed amount in display units of the token",
        examples=["1000.00"],
    )
    milestones: list[MilestoneInput] = Field(..., min_length=1)
    title: str = Field(default="", max_length=200)
    description: str = Field(default="", max_length=5000)
    token: str | None = Field(default=None, description="Token address; defaults to the configured token")
    auto_release: bool | None = Field(
        default=None,
        description="Release milestones automatically once all their conditions are met",
    )
    deadline: datetime | None = None
    idempotency_key: str | None = Field(
        default=None,
        description="Optional idempotency key to prevent duplicate escrow creation",
    )


class ReleaseMilestoneRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Must equal the milestone amount")


class ModificationRequest(BaseModel):
    """Proposed changes to a milestone; at least one field must be set."""

    title: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    deadline: datetime | None = None


class EvidenceRequest(BaseModel):
    evidence_hash: str = Field(..., min_length=1, max_length=128)
    evidence_link: str | None = Field(default=None, max_length=2000)


class AddConditionRequest(BaseModel):
    """Request body for attaching a release condition to a milestone."""

    condition_type: ConditionType
    data: dict[str, Any] = Field(
        default_factory=dict,
        description=(
            'time_based: {"release_at": "2030-01-01T00:00:00Z"}; '
            'oracle: {"oracle_id": "...", "schema": {...}}; '
            'third_party: {"verifiers": ["0x..."]}'
        ),
    )


class VerifyConditionRequest(BaseModel):
    evidence: dict[str, Any] | None = Field(
        default=None,
        description='Oracle conditions only: {"report": {...}, "signature": "<hex>"}',
    )


class OpenDisputeRequest(BaseModel):
    """Request body for opening a dispute on a milestone or a whole escrow."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    milestone_id: uuid.UUID | None = Field(
        default=None,
        description="Omit to dispute the escrow as a whole",
    )


class DisputeMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=10_000)


class ResolveDisputeRequest(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=5000)
    favor_client: bool


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class ConditionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    milestone_id: uuid.UUID
    position: int
    condition_type: str
    data: dict[str, Any]
    met: bool
    verified_at: datetime | None
    verified_by: str | None
    verify_tx_ref: str | None


class MilestoneResponse(BaseModel):
    """Response schema for a milestone."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    position: int
    title: str
    description: str
    percentage: Decimal = Field(validation_alias=AliasChoices("percentage_bps", "percentage"))
    amount: str
    status: str
    deadline: datetime | None
    completed_at: datetime | None
    release_tx_ref: str | None
    provider_confirmed_at: datetime | None
    evidence_hash: str | None
    evidence_link: str | None
    modification_requested: bool
    modification_requested_by: str | None
    proposed_title: str | None
    proposed_description: str | None
    proposed_deadline: datetime | None
    conditions: list[ConditionResponse] = []

    @field_validator("percentage", mode="before")
    @classmethod
    def _bps_to_percentage(cls, value: Any) -> Any:
        if isinstance(value, int):
            return bps_to_percentage(value)
        return value

    @field_validator("amount", mode="before")
    @classmethod
    def _format_amount(cls, value: Any, info: ValidationInfo) -> Any:
        return _display(value, info)


class EscrowResponse(BaseModel):
    """Response schema for an escrow with its milestones."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    contract_ref: str
    title: str
    description: str
    client_address: str
    provider_address: str
    token_address: str
    total_amount: str
    released_amount: str
    remaining_amount: str
    refunded_amount: str
    status: str
    auto_release: bool
    deadline: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    milestones: list[MilestoneResponse] = []

    @field_validator(
        "total_amount", "released_amount", "remaining_amount", "refunded_amount", mode="before"
    )
    @classmethod
    def _format_amounts(cls, value: Any, info: ValidationInfo) -> Any:
        return _display(value, info)


class AutoReleaseResponse(BaseModel):
    attempted: bool
    released: bool
    error_code: str | None
    message: str


class ConditionVerificationResponse(BaseModel):
    condition: ConditionResponse
    auto_release: AutoReleaseResponse


class DisputeMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    dispute_id: uuid.UUID
    author: str
    body: str
    created_at: datetime


class DisputeResponse(BaseModel):
    """Response schema for a dispute and its message thread."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    initiator: str
    title: str
    description: str
    status: str
    resolution: str | None
    favor_client: bool | None
    resolved_by: str | None
    resolved_at: datetime | None
    open_tx_ref: str | None
    resolve_tx_ref: str | None
    created_at: datetime
    messages: list[DisputeMessageResponse] = []


class EscrowEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    tx_ref: str | None
    metadata: dict | None = Field(default=None, validation_alias=AliasChoices("metadata_json", "metadata"))
    created_at: datetime


class MilestoneStatusEntry(BaseModel):
    milestone_id: uuid.UUID
    position: int
    status: str
    allowed_events: list[str]


class EscrowStatusResponse(BaseModel):
    """Lightweight status check response."""

    escrow_id: uuid.UUID
    status: str
    total_amount: str
    released_amount: str
    remaining_amount: str
    refunded_amount: str
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
    milestones: list[MilestoneStatusEntry]

    @field_validator(
        "total_amount", "released_amount", "remaining_amount", "refunded_amount", mode="before"
    )
    @classmethod
    def _format_amounts(cls, value: Any, info: ValidationInfo) -> Any:
        return _display(value, info)


class BalanceResponse(BaseModel):
    address: str
    balance: str

    @field_validator("balance", mode="before")
    @classmethod
    def _format_balance(cls, value: Any, info: ValidationInfo) -> Any:
        return _display(value, info)


class LedgerSnapshotResponse(BaseModel):
    """The ledger's view of an escrow next to the store's."""

    escrow_id: uuid.UUID
    contract_ref: str
    ledger_status: str | None
    ledger_released_amount: str | None
    store_released_amount: str
    milestone_statuses: list[str]
    in_sync: bool

    @field_validator("ledger_released_amount", "store_released_amount", mode="before")
    @classmethod
    def _format_amounts(cls, value: Any, info: ValidationInfo) -> Any:
        return _display(value, info)


class SettlementRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tx_ref: str
    kind: str
    escrow_id: uuid.UUID
    status: str
    attempts: int
    last_error: str | None
    created_at: datetime
    applied_at: datetime | None


class ReconciliationReportResponse(BaseModel):
    processed: int
    applied: list[str]
    deferred: list[str]
    discarded: list[str]
    failed: dict[str, str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    ledger: str = "unknown"
