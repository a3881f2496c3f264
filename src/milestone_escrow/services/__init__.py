"""Application services: use case orchestration."""

from milestone_escrow.services.condition_service import ConditionService
from milestone_escrow.services.container import ServiceContainer, build_container
from milestone_escrow.services.dispute_service import DisputeService
from milestone_escrow.services.escrow_service import EscrowService, MilestoneSpec
from milestone_escrow.services.reconciliation_service import ReconciliationService

__all__ = [
    "ConditionService",
    "DisputeService",
    "EscrowService",
    "MilestoneSpec",
    "ReconciliationService",
    "ServiceContainer",
    "build_container",
]
