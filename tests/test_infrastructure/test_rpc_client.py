"""Tests for the JSON-RPC ledger client, against an httpx mock transport."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from milestone_escrow.domain.enums import TransactionStatus
from milestone_escrow.domain.exceptions import (
    InsufficientFundsError,
    InvalidAddressError,
    LedgerError,
    LedgerTimeoutError,
    LedgerUnavailableError,
)
from milestone_escrow.domain.ledger_protocol import LedgerClient, LedgerMilestoneSpec
from milestone_escrow.infrastructure.ledger.rpc_client import JsonRpcLedgerClient

URL = "http://ledger.test/rpc"


class Gateway:
    """Scripted JSON-RPC gateway recording every request body."""

    def __init__(self, reply: Any = None, *, error: dict | None = None, status: int = 200) -> None:
        self.reply = reply
        self.error = error
        self.status = status
        self.requests: list[dict] = []
        self.headers: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)
        if self.status != 200:
            return httpx.Response(self.status, text="gateway down")
        if self.error is not None:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": self.error})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": self.reply})


def _client(handler: Any, **kwargs: Any) -> JsonRpcLedgerClient:
    return JsonRpcLedgerClient(URL, transport=httpx.MockTransport(handler), **kwargs)


class TestRequests:
    @pytest.mark.asyncio
    async def test_create_escrow_sends_amounts_as_strings(self) -> None:
        gateway = Gateway({"contract_ref": "escrow-42"})
        async with _client(gateway) as ledger:
            ref = await ledger.create_escrow(
                "0xclient",
                "0xprovider",
                10**20,
                "0xtoken",
                [LedgerMilestoneSpec(title="Design", description="", percentage_bps=10000, amount=10**20)],
            )

        assert ref == "escrow-42"
        body = gateway.requests[0]
        assert body["jsonrpc"] == "2.0"
        assert body["method"] == "escrow_create"
        assert body["params"]["amount"] == "100000000000000000000"
        assert body["params"]["milestones"][0]["amount"] == "100000000000000000000"
        assert body["params"]["milestones"][0]["percentage_bps"] == 10000

    @pytest.mark.asyncio
    async def test_release_accepts_bare_tx_ref(self) -> None:
        gateway = Gateway("tx-7")
        async with _client(gateway) as ledger:
            assert await ledger.release_funds("escrow-42", 1, 300) == "tx-7"
        assert gateway.requests[0]["params"] == {"contract_ref": "escrow-42", "milestone": 1, "amount": "300"}

    @pytest.mark.asyncio
    async def test_request_ids_increase(self) -> None:
        gateway = Gateway({"tx_ref": "tx-1"})
        async with _client(gateway) as ledger:
            await ledger.cancel_escrow("escrow-1")
            await ledger.cancel_escrow("escrow-2")
        assert [r["id"] for r in gateway.requests] == [1, 2]

    @pytest.mark.asyncio
    async def test_api_key_sent_as_bearer_token(self) -> None:
        gateway = Gateway({"tx_ref": "tx-1"})
        async with _client(gateway, api_key="s3cret") as ledger:
            await ledger.confirm_completion("escrow-1", 0)
        assert gateway.headers[0]["authorization"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_missing_tx_ref_is_an_error(self) -> None:
        async with _client(Gateway({})) as ledger:
            with pytest.raises(LedgerError, match="no transaction reference"):
                await ledger.cancel_escrow("escrow-1")

    @pytest.mark.asyncio
    async def test_satisfies_ledger_protocol(self) -> None:
        async with _client(Gateway()) as ledger:
            assert isinstance(ledger, LedgerClient)


class TestQueries:
    @pytest.mark.asyncio
    async def test_balance_parses_big_integers(self) -> None:
        async with _client(Gateway({"balance": "123456789012345678901234567890"})) as ledger:
            assert await ledger.get_balance("0xabc") == 123456789012345678901234567890

    @pytest.mark.asyncio
    async def test_escrow_details(self) -> None:
        reply = {
            "contract_ref": "escrow-42",
            "client": "0xclient",
            "provider": "0xprovider",
            "total_amount": "1000",
            "released_amount": "300",
            "status": "active",
        }
        async with _client(Gateway(reply)) as ledger:
            details = await ledger.get_escrow_details("escrow-42")
        assert details is not None
        assert details.total_amount == 1000
        assert details.released_amount == 300
        assert details.status == "active"

    @pytest.mark.asyncio
    async def test_escrow_details_not_found(self) -> None:
        gateway = Gateway(error={"code": -32004, "message": "no such escrow"})
        async with _client(gateway) as ledger:
            assert await ledger.get_escrow_details("escrow-404") is None

    @pytest.mark.asyncio
    async def test_milestones(self) -> None:
        reply = [
            {"index": 0, "title": "Design", "amount": "300", "status": "completed"},
            {"index": 1, "title": "Build", "amount": "700", "status": "pending"},
        ]
        async with _client(Gateway(reply)) as ledger:
            milestones = await ledger.get_milestones("escrow-42")
        assert [(m.index, m.amount, m.status) for m in milestones] == [(0, 300, "completed"), (1, 700, "pending")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("reply", "expected"),
        [
            ({"status": "COMMITTED"}, TransactionStatus.COMMITTED),
            ("pending", TransactionStatus.PENDING),
            ({"status": "failed"}, TransactionStatus.FAILED),
            ({"status": "reorged"}, TransactionStatus.UNKNOWN),
        ],
    )
    async def test_transaction_status(self, reply: Any, expected: TransactionStatus) -> None:
        async with _client(Gateway(reply)) as ledger:
            assert await ledger.get_transaction_status("tx-1") is expected


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_insufficient_funds(self) -> None:
        gateway = Gateway(error={"code": -32010, "message": "balance too low"})
        async with _client(gateway) as ledger:
            with pytest.raises(InsufficientFundsError, match="balance too low"):
                await ledger.release_funds("escrow-1", 0, 300)

    @pytest.mark.asyncio
    async def test_invalid_address(self) -> None:
        gateway = Gateway(error={"code": -32011, "message": "bad checksum"})
        async with _client(gateway) as ledger:
            with pytest.raises(InvalidAddressError):
                await ledger.get_balance("0xnope")

    @pytest.mark.asyncio
    async def test_other_rpc_error(self) -> None:
        gateway = Gateway(error={"code": -32601, "message": "method not found"})
        async with _client(gateway) as ledger:
            with pytest.raises(LedgerError) as exc_info:
                await ledger.cancel_escrow("escrow-1")
        assert exc_info.value.code == "LEDGER_ERROR"
        assert "-32601" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        async with _client(Gateway(status=503)) as ledger:
            with pytest.raises(LedgerUnavailableError, match="HTTP 503"):
                await ledger.cancel_escrow("escrow-1")

    @pytest.mark.asyncio
    async def test_connection_refused(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(refuse) as ledger:
            with pytest.raises(LedgerUnavailableError):
                await ledger.get_balance("0xabc")

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def stall(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(stall, timeout=0.5) as ledger:
            with pytest.raises(LedgerTimeoutError) as exc_info:
                await ledger.release_funds("escrow-1", 0, 300)
        assert exc_info.value.timeout == 0.5

    @pytest.mark.asyncio
    async def test_malformed_body(self) -> None:
        def garbage(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>oops</html>")

        async with _client(garbage) as ledger:
            with pytest.raises(LedgerError, match="Malformed"):
                await ledger.get_balance("0xabc")
