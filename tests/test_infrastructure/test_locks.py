"""Tests for the in-process per-escrow lock table."""

from __future__ import annotations

import asyncio
import uuid

import pytest

from milestone_escrow.domain.exceptions import OperationTimeoutError
from milestone_escrow.infrastructure.locks import LocalEscrowLocks


class TestLocalEscrowLocks:
    @pytest.mark.asyncio
    async def test_same_escrow_is_serialized(self) -> None:
        locks = LocalEscrowLocks()
        escrow_id = uuid.uuid4()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold(escrow_id, None):
                order.append(f"{name}:in")
                await asyncio.sleep(0.01)
                order.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a:in", "a:out", "b:in", "b:out"], ["b:in", "b:out", "a:in", "a:out"])

    @pytest.mark.asyncio
    async def test_different_escrows_do_not_block(self) -> None:
        locks = LocalEscrowLocks()
        async with locks.hold(uuid.uuid4(), None):
            async with locks.hold(uuid.uuid4(), 0.1):
                pass

    @pytest.mark.asyncio
    async def test_acquire_times_out(self) -> None:
        locks = LocalEscrowLocks()
        escrow_id = uuid.uuid4()
        async with locks.hold(escrow_id, None):
            with pytest.raises(OperationTimeoutError):
                async with locks.hold(escrow_id, 0.05):
                    pass
            assert locks.is_locked(escrow_id)

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = LocalEscrowLocks()
        escrow_id = uuid.uuid4()
        with pytest.raises(RuntimeError):
            async with locks.hold(escrow_id, None):
                raise RuntimeError("boom")
        assert not locks.is_locked(escrow_id)
        async with locks.hold(escrow_id, 0.1):
            pass

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self) -> None:
        locks = LocalEscrowLocks()
        escrow_id = uuid.uuid4()
        async with locks.hold(escrow_id, None):
            pass
        assert str(escrow_id) not in locks._locks
