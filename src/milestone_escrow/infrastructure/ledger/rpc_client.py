"""JSON-RPC 2.0 ledger client over httpx.

Each LedgerClient call maps to one JSON-RPC method on the ledger gateway.
Amounts travel as decimal strings of minor units so no precision is lost in
JSON. The gateway owns the smart-contract wire encoding.

Failure mapping:
    httpx.TimeoutException             -> LedgerTimeoutError
    transport errors / HTTP 5xx / 4xx  -> LedgerUnavailableError
    JSON-RPC error INSUFFICIENT_FUNDS  -> InsufficientFundsError
    JSON-RPC error INVALID_ADDRESS     -> InvalidAddressError
    any other JSON-RPC error           -> LedgerError
"""

from __future__ import annotations

import itertools
from typing import TYPE_CHECKING, Any

import httpx

from milestone_escrow.domain.enums import TransactionStatus
from milestone_escrow.domain.exceptions import (
    InsufficientFundsError,
    InvalidAddressError,
    LedgerError,
    LedgerTimeoutError,
    LedgerUnavailableError,
)
from milestone_escrow.domain.ledger_protocol import (
    LedgerEscrowSnapshot,
    LedgerMilestoneSnapshot,
    LedgerMilestoneSpec,
)
from milestone_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from milestone_escrow.domain.enums import ConditionType

logger = get_logger(__name__)

# Gateway error codes (JSON-RPC server-defined range)
ERR_INSUFFICIENT_FUNDS = -32010
ERR_INVALID_ADDRESS = -32011
ERR_NOT_FOUND = -32004


class JsonRpcLedgerClient:
    """LedgerClient implementation speaking JSON-RPC 2.0 to a ledger gateway.

    Usage:
        async with JsonRpcLedgerClient("http://localhost:9933/rpc") as ledger:
            ref = await ledger.create_escrow(...)
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._url = url
        self._timeout = timeout
        self._ids = itertools.count(1)
        self._http = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def __aenter__(self) -> JsonRpcLedgerClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            response = await self._http.post(self._url, json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as err:
            logger.warning("ledger.call_timeout", method=method, timeout=self._timeout)
            raise LedgerTimeoutError(method, self._timeout) from err
        except httpx.HTTPStatusError as err:
            logger.warning("ledger.call_failed", method=method, status=err.response.status_code)
            raise LedgerUnavailableError(
                f"Ledger gateway returned HTTP {err.response.status_code} for {method}"
            ) from err
        except httpx.HTTPError as err:
            logger.warning("ledger.call_failed", method=method, error=str(err))
            raise LedgerUnavailableError(f"Ledger gateway unreachable: {err}") from err
        except ValueError as err:
            raise LedgerError(f"Malformed JSON-RPC response for {method}") from err

        error = payload.get("error")
        if error:
            raise self._map_error(method, error)
        if "result" not in payload:
            raise LedgerError(f"Malformed JSON-RPC response for {method}: no result")
        logger.debug("ledger.call_ok", method=method, request_id=request_id)
        return payload["result"]

    @staticmethod
    def _map_error(method: str, error: dict[str, Any]) -> LedgerError:
        code = int(error.get("code", -1))
        message = str(error.get("message", "unknown ledger error"))
        logger.warning("ledger.rpc_error", method=method, code=code, message=message)
        if code == ERR_INSUFFICIENT_FUNDS:
            return InsufficientFundsError(message)
        if code == ERR_INVALID_ADDRESS:
            return InvalidAddressError(message)
        if code == ERR_NOT_FOUND:
            return LedgerError(message, code="LEDGER_NOT_FOUND")
        return LedgerError(f"{method} failed ({code}): {message}")

    async def _tx(self, method: str, params: dict[str, Any]) -> str:
        result = await self._call(method, params)
        tx_ref = result.get("tx_ref") if isinstance(result, dict) else result
        if not tx_ref:
            raise LedgerError(f"{method} returned no transaction reference")
        return str(tx_ref)

    # ------------------------------------------------------------------
    # Mutating calls
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        client: str,
        provider: str,
        amount: int,
        token: str,
        milestones: list[LedgerMilestoneSpec],
    ) -> str:
        result = await self._call(
            "escrow_create",
            {
                "client": client,
                "provider": provider,
                "amount": str(amount),
                "token": token,
                "milestones": [
                    {
                        "title": m.title,
                        "description": m.description,
                        "percentage_bps": m.percentage_bps,
                        "amount": str(m.amount),
                        "deadline": m.deadline,
                    }
                    for m in milestones
                ],
            },
        )
        contract_ref = result.get("contract_ref") if isinstance(result, dict) else result
        if not contract_ref:
            raise LedgerError("escrow_create returned no contract reference")
        return str(contract_ref)

    async def release_funds(self, contract_ref: str, milestone_index: int, amount: int) -> str:
        return await self._tx(
            "escrow_releaseFunds",
            {"contract_ref": contract_ref, "milestone": milestone_index, "amount": str(amount)},
        )

    async def cancel_escrow(self, contract_ref: str) -> str:
        return await self._tx("escrow_cancel", {"contract_ref": contract_ref})

    async def add_release_condition(
        self,
        contract_ref: str,
        milestone_index: int,
        condition_type: ConditionType,
        data: dict[str, Any],
    ) -> str:
        return await self._tx(
            "escrow_addReleaseCondition",
            {
                "contract_ref": contract_ref,
                "milestone": milestone_index,
                "condition_type": str(condition_type),
                "data": data,
            },
        )

    async def verify_condition(
        self,
        contract_ref: str,
        milestone_index: int,
        condition_index: int,
        verification: dict[str, Any],
    ) -> str:
        return await self._tx(
            "escrow_verifyCondition",
            {
                "contract_ref": contract_ref,
                "milestone": milestone_index,
                "condition": condition_index,
                "verification": verification,
            },
        )

    async def request_modification(
        self,
        contract_ref: str,
        milestone_index: int,
        title: str | None,
        description: str | None,
        deadline: str | None,
    ) -> str:
        return await self._tx(
            "escrow_requestModification",
            {
                "contract_ref": contract_ref,
                "milestone": milestone_index,
                "title": title,
                "description": description,
                "deadline": deadline,
            },
        )

    async def approve_modification(self, contract_ref: str, milestone_index: int) -> str:
        return await self._tx(
            "escrow_approveModification",
            {"contract_ref": contract_ref, "milestone": milestone_index},
        )

    async def confirm_completion(self, contract_ref: str, milestone_index: int) -> str:
        return await self._tx(
            "escrow_confirmCompletion",
            {"contract_ref": contract_ref, "milestone": milestone_index},
        )

    async def add_evidence(self, contract_ref: str, milestone_index: int, evidence_hash: str) -> str:
        return await self._tx(
            "escrow_addEvidence",
            {"contract_ref": contract_ref, "milestone": milestone_index, "evidence_hash": evidence_hash},
        )

    async def create_dispute(self, contract_ref: str, milestone_index: int | None, reason: str) -> str:
        return await self._tx(
            "escrow_createDispute",
            {"contract_ref": contract_ref, "milestone": milestone_index, "reason": reason},
        )

    async def resolve_dispute(self, contract_ref: str, dispute_ref: str, favor_client: bool) -> str:
        return await self._tx(
            "escrow_resolveDispute",
            {"contract_ref": contract_ref, "dispute_ref": dispute_ref, "favor_client": favor_client},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_balance(self, address: str) -> int:
        result = await self._call("ledger_getBalance", {"address": address})
        value = result.get("balance") if isinstance(result, dict) else result
        return int(value)

    async def get_escrow_details(self, contract_ref: str) -> LedgerEscrowSnapshot | None:
        try:
            result = await self._call("escrow_getDetails", {"contract_ref": contract_ref})
        except LedgerError as err:
            if err.code == "LEDGER_NOT_FOUND":
                return None
            raise
        if not result:
            return None
        return LedgerEscrowSnapshot(
            contract_ref=str(result.get("contract_ref", contract_ref)),
            client=str(result.get("client", "")),
            provider=str(result.get("provider", "")),
            total_amount=int(result.get("total_amount", 0)),
            released_amount=int(result.get("released_amount", 0)),
            status=str(result.get("status", "")),
            raw=result,
        )

    async def get_milestones(self, contract_ref: str) -> list[LedgerMilestoneSnapshot]:
        result = await self._call("escrow_getMilestones", {"contract_ref": contract_ref})
        return [
            LedgerMilestoneSnapshot(
                index=int(item.get("index", position)),
                title=str(item.get("title", "")),
                amount=int(item.get("amount", 0)),
                status=str(item.get("status", "")),
                raw=item,
            )
            for position, item in enumerate(result or [])
        ]

    async def get_transaction_status(self, tx_ref: str) -> TransactionStatus:
        result = await self._call("ledger_getTransactionStatus", {"tx_ref": tx_ref})
        value = result.get("status") if isinstance(result, dict) else result
        try:
            return TransactionStatus(str(value).lower())
        except ValueError:
            logger.warning("ledger.unknown_tx_status", tx_ref=tx_ref, status=value)
            return TransactionStatus.UNKNOWN
