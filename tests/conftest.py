"""Shared test fixtures for the milestone escrow test suite.

Provides:
    - A file-backed SQLite database per test (aiosqlite)
    - A service container wired to an in-memory FakeLedger
    - Factory helpers for creating escrows
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from milestone_escrow.config import Settings
from milestone_escrow.infrastructure.database.engine import make_session_factory
from milestone_escrow.infrastructure.database.orm_models import Base
from milestone_escrow.services.container import ServiceContainer, build_container
from milestone_escrow.services.escrow_service import MilestoneSpec
from tests.fakes import ARBITER, CLIENT, PROVIDER, VERIFIER, FakeClock, FakeLedger, FlakyApplier, StaticOracle

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from milestone_escrow.infrastructure.database.orm_models import Escrow


@dataclass
class Harness:
    container: ServiceContainer
    ledger: FakeLedger
    clock: FakeClock
    applier: FlakyApplier
    oracle: StaticOracle

    async def create_escrow(
        self,
        total_amount: int = 1000,
        percentages: tuple[str, ...] = ("30", "40", "30"),
        **kwargs: object,
    ) -> Escrow:
        return await self.container.escrows.create_escrow(
            CLIENT,
            PROVIDER,
            total_amount,
            [MilestoneSpec(title=f"Milestone {i + 1}", percentage=p) for i, p in enumerate(percentages)],
            title="Website redesign",
            **kwargs,
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        ledger_timeout_seconds=1.0,
        operation_timeout_seconds=5.0,
        token_decimals=2,
        default_auto_release=True,
        trusted_verifiers=VERIFIER,
        arbiter_addresses=ARBITER,
        reconciliation_batch_size=50,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def harness(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    clock: FakeClock,
) -> Harness:
    applier = FlakyApplier(clock=clock)
    oracle = StaticOracle()
    container = build_container(
        settings,
        session_factory,
        ledger,
        oracle=oracle,
        applier=applier,
        clock=clock,
    )
    return Harness(container=container, ledger=ledger, clock=clock, applier=applier, oracle=oracle)
