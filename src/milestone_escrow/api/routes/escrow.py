"""Escrow and milestone REST API routes.

Every mutating endpoint acts on behalf of the address in the
X-Actor-Address header. Amounts are decimal strings in display units.

Routes:
    POST   /api/v1/escrows                                   Create an escrow
    GET    /api/v1/escrows?address=...                       List escrows for a party
    GET    /api/v1/escrows/by-contract/{contract_ref}        Look up by ledger reference
    GET    /api/v1/escrows/{id}                              Escrow details
    GET    /api/v1/escrows/{id}/status                       Lightweight status check
    GET    /api/v1/escrows/{id}/events                       Audit trail
    GET    /api/v1/escrows/{id}/ledger                       Ledger view vs store view
    POST   /api/v1/escrows/{id}/cancel                       Cancel and refund
    GET    /api/v1/escrows/{id}/milestones                   Milestones
    POST   /api/v1/escrows/{id}/milestones/{mid}/release     Release a milestone
    POST   /api/v1/escrows/{id}/milestones/{mid}/request-modification  Request changes
    POST   /api/v1/escrows/{id}/milestones/{mid}/approve-modification  Approve changes
    POST   /api/v1/escrows/{id}/milestones/{mid}/confirm     Provider confirms completion
    POST   /api/v1/escrows/{id}/milestones/{mid}/evidence    Provider attaches evidence
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Query

from milestone_escrow.api.deps import get_actor, get_container, get_token_decimals
from milestone_escrow.domain.enums import EscrowStatus
from milestone_escrow.domain.exceptions import (
    DuplicateOperationError,
    EntityNotFoundError,
    ReconciliationPendingError,
    ReconciliationRequiredError,
)
from milestone_escrow.domain.money import parse_amount
from milestone_escrow.infrastructure import redis_client
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.escrow import (
    CreateEscrowRequest,
    EscrowEventResponse,
    EscrowResponse,
    EscrowStatusResponse,
    EvidenceRequest,
    LedgerSnapshotResponse,
    MilestoneResponse,
    ModificationRequest,
    ReleaseMilestoneRequest,
)
from milestone_escrow.services.container import ServiceContainer
from milestone_escrow.services.escrow_service import MilestoneSpec

if TYPE_CHECKING:
    from milestone_escrow.infrastructure.database.orm_models import Escrow, Milestone

router = APIRouter(prefix="/api/v1/escrows", tags=["Escrow"])
logger = get_logger(__name__)


def _escrow_response(escrow: Escrow, decimals: int) -> EscrowResponse:
    return EscrowResponse.model_validate(escrow, context={"decimals": decimals})


def _milestone_response(milestone: Milestone, decimals: int) -> MilestoneResponse:
    return MilestoneResponse.model_validate(milestone, context={"decimals": decimals})


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=EscrowResponse,
    status_code=201,
    summary="Create a new milestone escrow",
)
async def create_escrow(
    request: CreateEscrowRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> EscrowResponse:
    """Register the escrow on the ledger, then record it with its milestones.

    The acting address is the client. With an idempotency key and Redis
    available, a repeated request returns the escrow created the first time.
    """
    key = request.idempotency_key
    if key and redis_client.redis_available():
        if not await redis_client.claim_idempotency(key):
            previous = await redis_client.get_idempotent_result(key)
            if not previous:
                raise DuplicateOperationError(key)
            logger.info("idempotency.replayed", key=key, escrow_id=previous)
            try:
                escrow = await container.escrows.get_escrow(uuid.UUID(previous))
            except EntityNotFoundError as err:
                # Deployed on the ledger; the store has it after the next sweep
                raise ReconciliationPendingError(previous) from err
            return _escrow_response(escrow, decimals)
    else:
        key = None

    try:
        escrow = await container.escrows.create_escrow(
            client=actor,
            provider=request.provider,
            total_amount=parse_amount(request.total_amount, decimals),
            milestones=[
                MilestoneSpec(
                    title=m.title,
                    percentage=m.percentage,
                    description=m.description,
                    deadline=m.deadline,
                )
                for m in request.milestones
            ],
            title=request.title,
            description=request.description,
            token=request.token,
            auto_release=request.auto_release,
            deadline=request.deadline,
        )
    except ReconciliationRequiredError as exc:
        if key:
            await redis_client.set_idempotent_result(key, str(exc.intent.escrow_id))
        raise
    except Exception:
        if key:
            await redis_client.release_idempotency(key)
        raise

    if key:
        await redis_client.set_idempotent_result(key, str(escrow.id))
    return _escrow_response(escrow, decimals)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[EscrowResponse],
    summary="List escrows where an address is client or provider",
)
async def list_escrows(
    address: str = Query(..., min_length=1),
    status: EscrowStatus | None = Query(default=None),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> list[EscrowResponse]:
    escrows = await container.escrows.list_escrows_for_user(address, status)
    return [_escrow_response(e, decimals) for e in escrows]


@router.get(
    "/by-contract/{contract_ref}",
    response_model=EscrowResponse,
    summary="Get an escrow by its ledger contract reference",
)
async def get_escrow_by_contract(
    contract_ref: str,
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> EscrowResponse:
    escrow = await container.escrows.get_escrow_by_contract(contract_ref)
    return _escrow_response(escrow, decimals)


@router.get(
    "/{escrow_id}",
    response_model=EscrowResponse,
    summary="Get escrow details",
)
async def get_escrow(
    escrow_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> EscrowResponse:
    """Fetch an escrow with its milestones and their conditions."""
    escrow = await container.escrows.get_escrow(escrow_id)
    return _escrow_response(escrow, decimals)


@router.get(
    "/{escrow_id}/status",
    response_model=EscrowStatusResponse,
    summary="Get lightweight status check",
)
async def get_status(
    escrow_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> EscrowStatusResponse:
    """Return balances, statuses and the allowed next events."""
    status_data = await container.escrows.get_status(escrow_id)
    return EscrowStatusResponse.model_validate(status_data, context={"decimals": decimals})


@router.get(
    "/{escrow_id}/events",
    response_model=list[EscrowEventResponse],
    summary="Get audit trail",
)
async def get_events(
    escrow_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
) -> list[EscrowEventResponse]:
    events = await container.escrows.get_events(escrow_id)
    return [EscrowEventResponse.model_validate(e) for e in events]


@router.get(
    "/{escrow_id}/ledger",
    response_model=LedgerSnapshotResponse,
    summary="Compare the ledger's view of an escrow with the store's",
)
async def get_ledger_snapshot(
    escrow_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> LedgerSnapshotResponse:
    snapshot = await container.escrows.get_ledger_snapshot(escrow_id)
    details = snapshot["details"]
    return LedgerSnapshotResponse.model_validate(
        {
            "escrow_id": snapshot["escrow_id"],
            "contract_ref": snapshot["contract_ref"],
            "ledger_status": details.status if details else None,
            "ledger_released_amount": details.released_amount if details else None,
            "store_released_amount": snapshot["store_released_amount"],
            "milestone_statuses": [m.status for m in snapshot["milestones"]],
            "in_sync": snapshot["in_sync"],
        },
        context={"decimals": decimals},
    )


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


@router.post(
    "/{escrow_id}/cancel",
    response_model=EscrowResponse,
    summary="Cancel the escrow and refund unreleased funds",
)
async def cancel_escrow(
    escrow_id: uuid.UUID,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> EscrowResponse:
    escrow = await container.escrows.cancel_escrow(escrow_id, actor)
    return _escrow_response(escrow, decimals)


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


@router.get(
    "/{escrow_id}/milestones",
    response_model=list[MilestoneResponse],
    summary="List milestones",
)
async def list_milestones(
    escrow_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> list[MilestoneResponse]:
    milestones = await container.escrows.get_milestones(escrow_id)
    return [_milestone_response(m, decimals) for m in milestones]


@router.post(
    "/{escrow_id}/milestones/{milestone_id}/release",
    response_model=EscrowResponse,
    summary="Release a milestone's funds to the provider",
)
async def release_milestone(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    request: ReleaseMilestoneRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> EscrowResponse:
    escrow = await container.escrows.release_milestone(
        escrow_id,
        milestone_id,
        parse_amount(request.amount, decimals),
        actor,
    )
    return _escrow_response(escrow, decimals)


@router.post(
    "/{escrow_id}/milestones/{milestone_id}/request-modification",
    response_model=MilestoneResponse,
    summary="Request a change to a milestone",
)
async def request_modification(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    request: ModificationRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> MilestoneResponse:
    milestone = await container.escrows.request_milestone_modification(
        escrow_id,
        milestone_id,
        actor,
        title=request.title,
        description=request.description,
        deadline=request.deadline,
    )
    return _milestone_response(milestone, decimals)


@router.post(
    "/{escrow_id}/milestones/{milestone_id}/approve-modification",
    response_model=MilestoneResponse,
    summary="Approve the other party's requested change",
)
async def approve_modification(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> MilestoneResponse:
    milestone = await container.escrows.approve_milestone_modification(escrow_id, milestone_id, actor)
    return _milestone_response(milestone, decimals)


@router.post(
    "/{escrow_id}/milestones/{milestone_id}/confirm",
    response_model=MilestoneResponse,
    summary="Provider confirms the milestone work is complete",
)
async def confirm_completion(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> MilestoneResponse:
    milestone = await container.escrows.confirm_milestone_completion(escrow_id, milestone_id, actor)
    return _milestone_response(milestone, decimals)


@router.post(
    "/{escrow_id}/milestones/{milestone_id}/evidence",
    response_model=MilestoneResponse,
    summary="Provider attaches evidence of completion",
)
async def add_evidence(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    request: EvidenceRequest,
    actor: str = Depends(get_actor),
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> MilestoneResponse:
    milestone = await container.escrows.add_milestone_evidence(
        escrow_id,
        milestone_id,
        actor,
        request.evidence_hash,
        evidence_link=request.evidence_link,
    )
    return _milestone_response(milestone, decimals)
