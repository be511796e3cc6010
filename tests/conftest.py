"""Pytest configuration and fixtures."""

import asyncio
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["DRY_RUN"] = "true"
os.environ["SIMULATE_RESOLVERS"] = "false"

from fusioncross.chains.base import ChainRouter
from fusioncross.chains.simulated import SimulatedChain
from fusioncross.registry.database import SessionScope, session_scope
from fusioncross.registry.models import Base
from fusioncross.registry.repository import SwapRepository
from fusioncross.resolvers.directory import ResolverDirectory, default_profiles
from fusioncross.swaps.service import SwapCoordinator
from fusioncross.utils.retry import RetryPolicy

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced unix clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def swap_repo(db_session: AsyncSession) -> SwapRepository:
    """Create swap repository for testing."""
    return SwapRepository(db_session)


@pytest.fixture
def db(db_engine) -> SessionScope:
    """Committing session scope over the test engine."""
    factory = async_sessionmaker(
        bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    return session_scope(factory)


@pytest.fixture
def directory() -> ResolverDirectory:
    return ResolverDirectory(default_profiles())


@pytest.fixture
def chain_a(clock) -> SimulatedChain:
    return SimulatedChain("ethereum", clock=clock)


@pytest.fixture
def chain_b(clock) -> SimulatedChain:
    return SimulatedChain("stellar", clock=clock)


@pytest.fixture
def router(chain_a, chain_b) -> ChainRouter:
    return ChainRouter(chain_a, chain_b)


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy without sleeps."""
    return RetryPolicy(
        max_attempts=3,
        initial_backoff=0,
        max_backoff=0,
        jitter=0,
        rate_limit_pause=0,
        timeout=5.0,
    )


@pytest_asyncio.fixture
async def make_coordinator(router, directory, db, clock, fast_policy):
    """Factory for coordinators sharing the test chains and database."""
    created = []

    def factory(**overrides) -> SwapCoordinator:
        options = dict(
            router=router,
            resolvers=directory,
            policy=fast_policy,
            db=db,
            clock=clock,
            slots_per_swap=10,
            auction_duration=60.0,
        )
        options.update(overrides)
        coordinator = SwapCoordinator(**options)
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.shutdown()


@pytest_asyncio.fixture
async def coordinator(make_coordinator) -> SwapCoordinator:
    """Coordinator without simulated resolver agents."""
    return make_coordinator()


@pytest.fixture
def eventually():
    """Wait until a (sync or async) predicate holds, failing after ``timeout``."""

    async def wait(predicate, timeout: float = 3.0, interval: float = 0.01):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return wait


@pytest.fixture
def settle(clock):
    """Drive a swap through lock, auction and escrows to settled_on_b.

    Returns the StartedSwap (its ``secret`` is the preimage in hex).
    """

    async def run(coordinator, bids=(("resolver1", 20), ("resolver2", 30)), escrows=True):
        started = await coordinator.start_swap(
            "A_TO_B", "0xinitiator", "GRECIPIENT", 1_000_000, 1_000_000
        )
        await coordinator.lock_funds(started.swap_id)
        await coordinator.start_auction(started.swap_id)
        for resolver_id, percent in bids:
            await coordinator.submit_bid(started.swap_id, resolver_id, percent=percent)
            if escrows:
                await coordinator.lock_resolver_escrow(started.swap_id, resolver_id)
        if coordinator.engine.get(started.swap_id).active:
            await coordinator.close_auction(started.swap_id)
        return started

    return run
