"""Release condition REST API routes.

Routes:
    POST   /api/v1/escrows/{id}/milestones/{mid}/conditions              Add a condition
    GET    /api/v1/escrows/{id}/milestones/{mid}/conditions              List conditions
    POST   /api/v1/escrows/{id}/milestones/{mid}/conditions/{cid}/verify Verify a condition

Verifying the last unmet condition of a milestone triggers automatic release
when the escrow allows it; the outcome is reported next to the condition.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from milestone_escrow.api.deps import get_actor, get_container
from milestone_escrow.schemas.escrow import (
    AddConditionRequest,
    AutoReleaseResponse,
    ConditionResponse,
    ConditionVerificationResponse,
    VerifyConditionRequest,
)
from milestone_escrow.services.container import ServiceContainer

router = APIRouter(
    prefix="/api/v1/escrows/{escrow_id}/milestones/{milestone_id}/conditions",
    tags=["Conditions"],
)


@router.post(
    "",
    response_model=ConditionResponse,
    status_code=201,
    summary="Attach a release condition to a milestone",
)
async def add_condition(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    request: AddConditionRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
) -> ConditionResponse:
    condition = await container.conditions.add_condition(
        escrow_id, milestone_id, request.condition_type, request.data, actor
    )
    return ConditionResponse.model_validate(condition)


@router.get(
    "",
    response_model=list[ConditionResponse],
    summary="List a milestone's release conditions",
)
async def list_conditions(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
) -> list[ConditionResponse]:
    conditions = await container.conditions.list_conditions(escrow_id, milestone_id)
    return [ConditionResponse.model_validate(c) for c in conditions]


@router.post(
    "/{condition_id}/verify",
    response_model=ConditionVerificationResponse,
    summary="Verify a release condition",
)
async def verify_condition(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    condition_id: uuid.UUID,
    request: VerifyConditionRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
) -> ConditionVerificationResponse:
    """Mark the condition met; the acting address is recorded as the verifier."""
    result = await container.conditions.verify_condition(
        escrow_id, milestone_id, condition_id, actor, request.evidence
    )
    outcome = result.auto_release
    return ConditionVerificationResponse(
        condition=ConditionResponse.model_validate(result.condition),
        auto_release=AutoReleaseResponse(
            attempted=outcome.attempted,
            released=outcome.released,
            error_code=outcome.error_code,
            message=outcome.message,
        ),
    )
