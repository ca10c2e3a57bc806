"""
Reward adapter tests
Deterministic event ids, exactly-once credit and the ledger balance
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from config import Config
from models import Reward, RewardLedger, User
from services.reward_service import RewardService, RewardServiceError, execution_event_id
from tests.factories import T0, fetch


@pytest.fixture
def photon_config():
    with patch.object(Config, "PHOTON_API_KEY", "photon_test_key"), \
            patch.object(Config, "PHOTON_CAMPAIGN_ID", "stride-sip-campaign"):
        yield


@pytest.fixture
def reward_service(session_factory, clock, photon_config):
    service = RewardService(session_factory, clock=clock)
    service._post_campaign_event = AsyncMock(return_value={"token_amount": "2.5", "token_symbol": "PHOTON"})
    return service


@pytest.fixture
def create_registered_user(create_user):
    async def _create():
        return await create_user(vault_address="0xvault", photon_id="photon-user-1", access_token="photon-access")
    return _create


class TestTriggerExecutionReward:

    def test_event_id_is_deterministic(self):
        assert execution_event_id(12, 345) == "sip_execution-12-345"

    @pytest.mark.asyncio
    async def test_credit_recorded_once(self, reward_service, create_registered_user, session_factory):
        user = await create_registered_user()

        first = await reward_service.trigger_execution_reward(user.id, 7, 70, 10000)
        second = await reward_service.trigger_execution_reward(user.id, 7, 70, 10000)

        assert first.status == "credited"
        assert first.token_amount == Decimal("2.5")
        assert second.status == "duplicate"
        reward_service._post_campaign_event.assert_awaited_once()

        body, token = reward_service._post_campaign_event.await_args.args
        assert body["event_id"] == "sip_execution-7-70"
        assert body["user_id"] == "photon-user-1"
        assert body["campaign_id"] == "stride-sip-campaign"
        assert body["timestamp"] == T0.isoformat() + "Z"
        assert token == "photon-access"

        async with session_factory() as session:
            rewards = list((await session.execute(select(Reward))).scalars())
            ledger = (await session.execute(select(RewardLedger))).scalar_one()
        assert len(rewards) == 1
        assert rewards[0].credited is True
        assert ledger.balance == Decimal("2.5")
        assert ledger.last_event_id == "sip_execution-7-70"
        assert (await fetch(session_factory, User, user.id)).reward_points == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_balance_accumulates_across_executions(self, reward_service, create_registered_user, session_factory):
        user = await create_registered_user()
        await reward_service.trigger_execution_reward(user.id, 7, 70, 10000)
        await reward_service.trigger_execution_reward(user.id, 7, 71, 10000)

        async with session_factory() as session:
            ledger = (await session.execute(select(RewardLedger))).scalar_one()
        assert ledger.balance == Decimal("5.0")

    @pytest.mark.asyncio
    async def test_unregistered_user_skipped(self, reward_service, create_user):
        user = await create_user()
        outcome = await reward_service.trigger_execution_reward(user.id, 1, 1, 10000)

        assert outcome.status == "not_registered"
        reward_service._post_campaign_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_reward_not_recorded(self, reward_service, create_registered_user, session_factory):
        user = await create_registered_user()
        reward_service._post_campaign_event.return_value = {"token_amount": 0}

        outcome = await reward_service.trigger_execution_reward(user.id, 2, 20, 10000)

        assert outcome.status == "zero"
        async with session_factory() as session:
            assert (await session.execute(select(Reward))).first() is None

    @pytest.mark.asyncio
    async def test_disabled_without_credentials(self, session_factory, create_registered_user):
        user = await create_registered_user()
        with patch.object(Config, "PHOTON_API_KEY", None):
            service = RewardService(session_factory)
            service._post_campaign_event = AsyncMock()
            outcome = await service.trigger_execution_reward(user.id, 3, 30, 10000)

        assert outcome.status == "disabled"
        service._post_campaign_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upstream_failure_propagates(self, reward_service, create_registered_user, session_factory):
        user = await create_registered_user()
        reward_service._post_campaign_event.side_effect = RewardServiceError("photon", "HTTP 502: bad gateway", status=502)

        with pytest.raises(RewardServiceError):
            await reward_service.trigger_execution_reward(user.id, 4, 40, 10000)
        async with session_factory() as session:
            assert (await session.execute(select(Reward))).first() is None
