"""
Reward adapter: reports completed investments to the Photon campaign engine
and records the token credit it returns.

Event ids are derived from the plan and transaction ids, so retrying the same
execution can never credit twice (rewards.event_id is unique).
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import aiohttp
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import Reward, RewardEventType, RewardLedger, User
from services.api_adapter_retry import APIAdapter, ExternalAPIError
from services.retry_service import retry_async_decorator
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class RewardServiceError(ExternalAPIError):
    pass


@dataclass
class RewardOutcome:
    status: str  # credited | zero | duplicate | not_registered | disabled
    event_id: str
    token_amount: Decimal = Decimal("0")
    token_symbol: Optional[str] = None


def execution_event_id(plan_id: int, transaction_id: int) -> str:
    return f"{RewardEventType.SIP_EXECUTION.value}-{plan_id}-{transaction_id}"


class RewardService(APIAdapter):
    error_class = RewardServiceError

    def __init__(
        self,
        session_factory: async_sessionmaker,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Clock = system_clock,
    ):
        super().__init__(service_name="photon", timeout=30, session=session)
        self.session_factory = session_factory
        self.clock = clock
        self.base_url = Config.PHOTON_API_URL.rstrip("/")
        self.campaign_id = Config.PHOTON_CAMPAIGN_ID

    @property
    def enabled(self) -> bool:
        return bool(Config.PHOTON_API_KEY and self.campaign_id)

    @retry_async_decorator("rewards")
    async def _post_campaign_event(self, body: Dict[str, Any], access_token: str) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "X-API-Key": Config.PHOTON_API_KEY or "",
            "Authorization": f"Bearer {access_token}",
        }
        response = await self._make_http_request(
            "POST", f"{self.base_url}/attribution/events/campaign", headers=headers, json=body
        )
        return (response or {}).get("data") or {}

    async def trigger_execution_reward(
        self, user_id: int, plan_id: int, transaction_id: int, amount_in: int
    ) -> RewardOutcome:
        """Report a settled execution; raises RewardServiceError when the engine is unreachable"""
        event_id = execution_event_id(plan_id, transaction_id)

        if not self.enabled:
            return RewardOutcome("disabled", event_id)

        async with self.session_factory() as session:
            existing = (await session.execute(select(Reward.id).where(Reward.event_id == event_id))).scalar_one_or_none()
            if existing is not None:
                logger.info(f"🔁 REWARD_DUPLICATE: {event_id} already recorded")
                return RewardOutcome("duplicate", event_id)
            user = await session.get(User, user_id)
            if user is None or not user.photon_id or not user.access_token:
                logger.info(f"ℹ️ REWARD_SKIPPED: user {user_id} not registered with the campaign engine")
                return RewardOutcome("not_registered", event_id)
            photon_id, access_token = user.photon_id, user.access_token

        now = self.clock.now()
        body = {
            "event_id": event_id,
            "event_type": RewardEventType.SIP_EXECUTION.value,
            "user_id": photon_id,
            "campaign_id": self.campaign_id,
            "metadata": {"sip_id": plan_id, "transaction_id": transaction_id, "amount": amount_in},
            "timestamp": now.isoformat() + "Z",
        }
        data = await self._post_campaign_event(body, access_token)

        try:
            token_amount = Decimal(str(data.get("token_amount", 0)))
        except InvalidOperation as e:
            raise RewardServiceError(self.service_name, "Malformed token_amount in response", retryable=False) from e
        token_symbol = data.get("token_symbol") or "PHOTON"

        if token_amount <= 0:
            logger.info(f"ℹ️ REWARD_ZERO: {event_id} earned no tokens")
            return RewardOutcome("zero", event_id, token_amount, token_symbol)

        return await self._record_credit(user_id, transaction_id, event_id, token_amount, token_symbol, now)

    async def _record_credit(
        self, user_id: int, transaction_id: int, event_id: str, token_amount: Decimal, token_symbol: str, now
    ) -> RewardOutcome:
        async with self.session_factory() as session:
            session.add(
                Reward(
                    user_id=user_id,
                    event_id=event_id,
                    event_type=RewardEventType.SIP_EXECUTION.value,
                    campaign_id=self.campaign_id,
                    transaction_id=transaction_id,
                    token_amount=token_amount,
                    token_symbol=token_symbol,
                    credited=True,
                    triggered_at=now,
                    credited_at=now,
                )
            )
            ledger = (
                await session.execute(
                    select(RewardLedger).where(
                        RewardLedger.user_id == user_id, RewardLedger.token_symbol == token_symbol
                    )
                )
            ).scalar_one_or_none()
            if ledger is None:
                ledger = RewardLedger(user_id=user_id, token_symbol=token_symbol, balance=Decimal("0"))
                session.add(ledger)
            ledger.balance = (ledger.balance or Decimal("0")) + token_amount
            ledger.last_event_id = event_id

            user = await session.get(User, user_id)
            user.reward_points = (user.reward_points or Decimal("0")) + token_amount
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(f"🔁 REWARD_RACE_DUPLICATE: {event_id}")
                return RewardOutcome("duplicate", event_id)

        logger.info(f"🎁 REWARD_CREDITED: {event_id} {token_amount} {token_symbol} to user {user_id}")
        return RewardOutcome("credited", event_id, token_amount, token_symbol)
