"""Ledger transport implementations."""

from milestone_escrow.infrastructure.ledger.rpc_client import JsonRpcLedgerClient

__all__ = ["JsonRpcLedgerClient"]
