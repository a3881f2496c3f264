"""Pydantic API schemas."""

from milestone_escrow.schemas.escrow import (
    AddConditionRequest,
    BalanceResponse,
    ConditionResponse,
    ConditionVerificationResponse,
    CreateEscrowRequest,
    DisputeMessageRequest,
    DisputeMessageResponse,
    DisputeResponse,
    EscrowEventResponse,
    EscrowResponse,
    EscrowStatusResponse,
    EvidenceRequest,
    HealthResponse,
    LedgerSnapshotResponse,
    MilestoneInput,
    MilestoneResponse,
    ModificationRequest,
    OpenDisputeRequest,
    ReconciliationReportResponse,
    ReleaseMilestoneRequest,
    ResolveDisputeRequest,
    SettlementRecordResponse,
    VerifyConditionRequest,
)

__all__ = [
    "AddConditionRequest",
    "BalanceResponse",
    "ConditionResponse",
    "ConditionVerificationResponse",
    "CreateEscrowRequest",
    "DisputeMessageRequest",
    "DisputeMessageResponse",
    "DisputeResponse",
    "EscrowEventResponse",
    "EscrowResponse",
    "EscrowStatusResponse",
    "EvidenceRequest",
    "HealthResponse",
    "LedgerSnapshotResponse",
    "MilestoneInput",
    "MilestoneResponse",
    "ModificationRequest",
    "OpenDisputeRequest",
    "ReconciliationReportResponse",
    "ReleaseMilestoneRequest",
    "ResolveDisputeRequest",
    "SettlementRecordResponse",
    "VerifyConditionRequest",
]
