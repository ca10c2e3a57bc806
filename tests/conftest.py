"""
Shared fixtures for the SIP scheduler test suite

Key Components:
1. Per-test SQLite database (aiosqlite, file backed so concurrent sessions get their own connection)
2. Fixed clock so schedule arithmetic is exact
3. Fake oracle and chain adapters with scriptable failures
4. User and plan factories
"""

import itertools
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from database import create_tables, dispose_database, init_database
from jobs.sip_execution_engine import SIPExecutionEngine
from models import Plan, PlanFrequency, PlanStatus, Transaction, TransactionStatus, TransactionType, User
from services.oracle_service import OracleError
from services.reward_service import RewardOutcome
from utils.clock import FixedClock
from utils.distributed_lock import DistributedLockService
from tests.factories import T0, FakeChain, FakeOracle, vault_for

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh schema per test"""
    factory = init_database(f"sqlite+aiosqlite:///{tmp_path / 'stride_test.db'}")
    await create_tables()
    yield factory
    await dispose_database()


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def rewards():
    mock = AsyncMock()
    mock.trigger_execution_reward.return_value = RewardOutcome("credited", "sip_execution-0-0", Decimal("1"), "PHOTON")
    return mock


@pytest.fixture
def receipts():
    return AsyncMock()


@pytest.fixture
def lock_service(session_factory, clock):
    return DistributedLockService(session_factory, default_timeout=900, clock=clock)


@pytest.fixture
def make_engine(session_factory, oracle, chain, rewards, receipts, clock, lock_service):
    def _make(**overrides) -> SIPExecutionEngine:
        options = dict(
            oracle=oracle,
            chain=chain,
            rewards=rewards,
            receipts=receipts,
            clock=clock,
            signer=object(),
            lock_service=lock_service,
            max_concurrency=1,
            plan_timeout=10,
            confirmation_timeout=5,
            fill_timeout=0,
            fill_poll_interval=0.01,
            failure_threshold=3,
        )
        options.update(overrides)
        return SIPExecutionEngine(session_factory, **options)
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


_phones = itertools.count(9000000001)


@pytest.fixture
def create_user(session_factory):
    async def _create(wallet_address: Optional[str] = "0xwallet", vault_address: Optional[str] = None, **kwargs) -> User:
        async with session_factory() as session:
            user = User(
                phone=f"+91{next(_phones)}",
                wallet_address=wallet_address,
                vault_address=vault_address,
                **kwargs,
            )
            session.add(user)
            await session.commit()
            return user
    return _create


_vaults = itertools.count(1)


@pytest.fixture
def create_plan(session_factory):
    async def _create(
        user: User,
        amount: int = 10000,
        frequency: PlanFrequency = PlanFrequency.DAILY,
        next_execution: Optional[datetime] = None,
        status: str = PlanStatus.ACTIVE.value,
        vault_address: Optional[str] = None,
        vault_index: Optional[int] = 0,
        target_asset: str = "APT",
        input_asset: str = "INR",
        bind_vault: bool = True,
        **kwargs,
    ) -> Plan:
        if vault_address is None and bind_vault:
            vault_address = vault_for(next(_vaults))
        async with session_factory() as session:
            plan = Plan(
                user_id=user.id,
                amount=amount,
                frequency=frequency.value,
                interval_seconds=frequency.interval_seconds,
                target_asset=target_asset,
                input_asset=input_asset,
                vault_address=vault_address,
                vault_index=vault_index if vault_address else None,
                status=status,
                next_execution=next_execution or (T0 - timedelta(seconds=1)),
                **kwargs,
            )
            session.add(plan)
            await session.commit()
            return plan
    return _create


@pytest.fixture
def create_processing_attempt(session_factory):
    """An execution attempt left processing by a crashed pass"""
    async def _create(
        plan: Plan,
        tx_hash: Optional[str] = None,
        submitted_at: Optional[datetime] = None,
        amount_out: Optional[int] = None,
        due_window: Optional[datetime] = None,
    ) -> Transaction:
        async with session_factory() as session:
            tx = Transaction(
                user_id=plan.user_id,
                plan_id=plan.id,
                type=TransactionType.SIP_EXECUTION.value,
                status=TransactionStatus.PROCESSING.value,
                amount_in=plan.amount,
                asset_in="INR",
                asset_out=plan.target_asset,
                due_window=due_window or plan.next_execution,
                tx_hash=tx_hash,
                amount_out=amount_out,
                submitted_at=submitted_at,
                created_at=submitted_at or T0,
            )
            session.add(tx)
            await session.commit()
            return tx
    return _create


@pytest.fixture
def oracle_down():
    return OracleError("oracle", "HTTP 503: upstream unavailable")
