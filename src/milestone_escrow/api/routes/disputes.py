"""Dispute REST API routes.

Routes:
    POST   /api/v1/escrows/{id}/disputes         Open a dispute (milestone or escrow-wide)
    GET    /api/v1/escrows/{id}/disputes         List an escrow's disputes
    GET    /api/v1/disputes/{did}                Dispute with its message thread
    POST   /api/v1/disputes/{did}/messages       Post to the dispute thread
    POST   /api/v1/disputes/{did}/resolve        Arbiter resolves the dispute
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from milestone_escrow.api.deps import get_actor, get_container
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.escrow import (
    DisputeMessageRequest,
    DisputeMessageResponse,
    DisputeResponse,
    OpenDisputeRequest,
    ResolveDisputeRequest,
)
from milestone_escrow.services.container import ServiceContainer

router = APIRouter(prefix="/api/v1", tags=["Disputes"])
logger = get_logger(__name__)


@router.post(
    "/escrows/{escrow_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    summary="Open a dispute",
)
async def open_dispute(
    escrow_id: uuid.UUID,
    request: OpenDisputeRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
) -> DisputeResponse:
    """Open a dispute on one milestone, or on the whole escrow when no milestone is given.

    While any dispute is open the escrow is frozen.
    """
    dispute = await container.disputes.open_dispute(
        escrow_id,
        actor,
        request.title,
        request.description,
        milestone_id=request.milestone_id,
    )
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/escrows/{escrow_id}/disputes",
    response_model=list[DisputeResponse],
    summary="List disputes for an escrow",
)
async def list_disputes(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID | None = Query(default=None),
    container: ServiceContainer = Depends(get_container),
) -> list[DisputeResponse]:
    disputes = await container.disputes.list_disputes(escrow_id, milestone_id)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get(
    "/disputes/{dispute_id}",
    response_model=DisputeResponse,
    summary="Get a dispute",
)
async def get_dispute(
    dispute_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
) -> DisputeResponse:
    dispute = await container.disputes.get_dispute(dispute_id)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/disputes/{dispute_id}/messages",
    response_model=DisputeMessageResponse,
    status_code=201,
    summary="Post a message to the dispute thread",
)
async def post_message(
    dispute_id: uuid.UUID,
    request: DisputeMessageRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
) -> DisputeMessageResponse:
    message = await container.disputes.post_message(dispute_id, actor, request.text)
    return DisputeMessageResponse.model_validate(message)


@router.post(
    "/disputes/{dispute_id}/resolve",
    response_model=DisputeResponse,
    summary="Resolve a dispute (arbiters only)",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
) -> DisputeResponse:
    dispute = await container.disputes.resolve(
        dispute_id, request.resolution, request.favor_client, actor
    )
    return DisputeResponse.model_validate(dispute)
