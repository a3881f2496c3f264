"""Ledger and reconciliation REST API routes.

Routes:
    GET    /api/v1/wallets/{address}/balance        Token balance on the ledger
    GET    /api/v1/reconciliation/pending           Journaled settlements awaiting repair
    POST   /api/v1/reconciliation/sweep             Run one reconciliation sweep
    POST   /api/v1/reconciliation/{tx_ref}          Reconcile one settlement
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from milestone_escrow.api.deps import get_container, get_token_decimals
from milestone_escrow.logging_config import get_logger
from milestone_escrow.schemas.escrow import (
    BalanceResponse,
    ReconciliationReportResponse,
    SettlementRecordResponse,
)
from milestone_escrow.services.container import ServiceContainer

router = APIRouter(prefix="/api/v1", tags=["Ledger"])
logger = get_logger(__name__)


@router.get(
    "/wallets/{address}/balance",
    response_model=BalanceResponse,
    summary="Get a wallet's token balance",
)
async def get_balance(
    address: str,
    container: ServiceContainer = Depends(get_container),
    decimals: int = Depends(get_token_decimals),
) -> BalanceResponse:
    balance = await container.escrows.get_wallet_balance(address)
    return BalanceResponse.model_validate(
        {"address": address, "balance": balance}, context={"decimals": decimals}
    )


@router.get(
    "/reconciliation/pending",
    response_model=list[SettlementRecordResponse],
    summary="List settlements committed on the ledger but not yet applied",
)
async def list_pending(
    limit: int | None = Query(default=None, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
) -> list[SettlementRecordResponse]:
    records = await container.reconciliation.pending(limit)
    return [SettlementRecordResponse.model_validate(r) for r in records]


@router.post(
    "/reconciliation/sweep",
    response_model=ReconciliationReportResponse,
    summary="Run one reconciliation sweep",
)
async def sweep(
    limit: int | None = Query(default=None, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
) -> ReconciliationReportResponse:
    report = await container.reconciliation.sweep(limit)
    return ReconciliationReportResponse(**report.to_dict())


@router.post(
    "/reconciliation/{tx_ref}",
    summary="Reconcile a single journaled settlement",
)
async def reconcile_one(
    tx_ref: str,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    outcome = await container.reconciliation.reconcile(tx_ref)
    logger.info("reconciliation.manual", tx_ref=tx_ref, outcome=outcome.value)
    return {"tx_ref": tx_ref, "outcome": outcome.value}
