"""
Plan Service
User-driven plan lifecycle: create, amend, pause, resume, cancel and vault binding.

The execution engine owns the post-execution fields (statistics,
last_executed_at, next_execution after a run); this service only touches
next_execution when the schedule itself changes.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import Plan, PlanFrequency, PlanStatus, User
from services.audit_logger import AuditAction, record_audit
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

SUPPORTED_TARGET_ASSETS = ("APT", "USDC")
SUPPORTED_INPUT_ASSETS = ("INR", "USDC")


class PlanError(Exception):
    pass


class PlanValidationError(PlanError, ValueError):
    pass


class PlanNotFoundError(PlanError, LookupError):
    pass


class PlanStateError(PlanError):
    """Operation not allowed in the plan's current status"""
    pass


def parse_frequency(value) -> PlanFrequency:
    if isinstance(value, PlanFrequency):
        return value
    try:
        return PlanFrequency(str(value).lower())
    except ValueError:
        allowed = ", ".join(f.value for f in PlanFrequency)
        raise PlanValidationError(f"Unsupported frequency {value!r}; expected one of {allowed}")


def validate_amount(amount: int, input_asset: str = "INR") -> int:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise PlanValidationError("Amount must be an integer in the smallest currency unit")
    if amount <= 0:
        raise PlanValidationError("Amount must be positive")
    if input_asset == "INR":
        if amount < Config.MIN_PLAN_AMOUNT_PAISE:
            raise PlanValidationError(f"Minimum plan amount is {Config.MIN_PLAN_AMOUNT_PAISE // 100} INR")
        if amount > Config.MAX_PLAN_AMOUNT_PAISE:
            raise PlanValidationError(f"Maximum plan amount is {Config.MAX_PLAN_AMOUNT_PAISE // 100} INR")
    return amount


class PlanService:
    def __init__(self, session_factory: async_sessionmaker, clock: Clock = system_clock):
        self.session_factory = session_factory
        self.clock = clock

    async def _load(self, session: AsyncSession, plan_id: int) -> Plan:
        plan = await session.get(Plan, plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        return plan

    @staticmethod
    def _require_mutable(plan: Plan) -> None:
        if plan.status in PlanStatus.terminal():
            raise PlanStateError(f"Plan {plan.id} is {plan.status}")

    async def create_plan(
        self,
        user_id: int,
        amount: int,
        frequency,
        target_asset: str = "APT",
        input_asset: str = "INR",
        name: Optional[str] = None,
        vault_address: Optional[str] = None,
        vault_index: Optional[int] = None,
    ) -> Plan:
        freq = parse_frequency(frequency)
        target_asset = target_asset.upper()
        input_asset = (input_asset or "INR").upper()
        if target_asset not in SUPPORTED_TARGET_ASSETS:
            raise PlanValidationError(f"Unsupported target asset {target_asset}")
        if input_asset not in SUPPORTED_INPUT_ASSETS:
            raise PlanValidationError(f"Unsupported input asset {input_asset}")
        validate_amount(amount, input_asset)

        now = self.clock.now()
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise PlanNotFoundError(f"User {user_id} not found")

            plan = Plan(
                user_id=user_id,
                name=name,
                amount=amount,
                frequency=freq.value,
                interval_seconds=freq.interval_seconds,
                target_asset=target_asset,
                input_asset=input_asset,
                vault_address=vault_address,
                vault_index=vault_index,
                status=PlanStatus.ACTIVE.value,
                next_execution=now + timedelta(seconds=freq.interval_seconds),
                created_at=now,
                updated_at=now,
            )
            session.add(plan)
            await session.flush()
            record_audit(
                session, AuditAction.PLAN_CREATED, "plan", plan.id, user_id,
                {"amount": amount, "frequency": freq.value, "target_asset": target_asset}, now,
            )
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise PlanValidationError("Vault slot already bound to another plan") from e

        logger.info(f"✅ PLAN_CREATED: plan {plan.id} user {user_id} {amount} {input_asset} {freq.value} -> {target_asset}")
        return plan

    async def update_amount(self, plan_id: int, amount: int) -> Plan:
        async with self.session_factory() as session:
            plan = await self._load(session, plan_id)
            self._require_mutable(plan)
            validate_amount(amount, plan.input_asset or "INR")
            previous = plan.amount
            plan.amount = amount
            plan.updated_at = self.clock.now()
            record_audit(
                session, AuditAction.PLAN_AMOUNT_UPDATED, "plan", plan.id, plan.user_id,
                {"from": previous, "to": amount}, plan.updated_at,
            )
            await session.commit()
        logger.info(f"✏️ PLAN_AMOUNT_UPDATED: plan {plan_id} {previous} -> {amount}")
        return plan

    async def update_frequency(self, plan_id: int, frequency) -> Plan:
        """Change the period; the next run is rescheduled one new interval from now"""
        freq = parse_frequency(frequency)
        now = self.clock.now()
        async with self.session_factory() as session:
            plan = await self._load(session, plan_id)
            self._require_mutable(plan)
            previous = plan.frequency
            plan.frequency = freq.value
            plan.interval_seconds = freq.interval_seconds
            plan.next_execution = now + timedelta(seconds=freq.interval_seconds)
            plan.updated_at = now
            record_audit(
                session, AuditAction.PLAN_FREQUENCY_UPDATED, "plan", plan.id, plan.user_id,
                {"from": previous, "to": freq.value, "next_execution": plan.next_execution.isoformat()}, now,
            )
            await session.commit()
        logger.info(f"✏️ PLAN_FREQUENCY_UPDATED: plan {plan_id} {previous} -> {freq.value}")
        return plan

    async def pause(self, plan_id: int, reason: str = "user") -> Plan:
        async with self.session_factory() as session:
            plan = await self._load(session, plan_id)
            if plan.status != PlanStatus.ACTIVE.value:
                raise PlanStateError(f"Only active plans can be paused (plan {plan_id} is {plan.status})")
            plan.status = PlanStatus.PAUSED.value
            plan.updated_at = self.clock.now()
            record_audit(session, AuditAction.PLAN_PAUSED, "plan", plan.id, plan.user_id, {"reason": reason}, plan.updated_at)
            await session.commit()
        logger.info(f"⏸️ PLAN_PAUSED: plan {plan_id} ({reason})")
        return plan

    async def resume(self, plan_id: int) -> Plan:
        """
        Reactivate a paused plan. A next_execution already in the past is
        moved one interval ahead so resuming never triggers a catch-up run.
        The consecutive failure counter restarts.
        """
        now = self.clock.now()
        async with self.session_factory() as session:
            plan = await self._load(session, plan_id)
            if plan.status != PlanStatus.PAUSED.value:
                raise PlanStateError(f"Only paused plans can be resumed (plan {plan_id} is {plan.status})")
            plan.status = PlanStatus.ACTIVE.value
            plan.consecutive_failures = 0
            if plan.next_execution <= now:
                plan.next_execution = now + timedelta(seconds=plan.interval_seconds)
            plan.updated_at = now
            record_audit(
                session, AuditAction.PLAN_RESUMED, "plan", plan.id, plan.user_id,
                {"next_execution": plan.next_execution.isoformat()}, now,
            )
            await session.commit()
        logger.info(f"▶️ PLAN_RESUMED: plan {plan_id} next={plan.next_execution.isoformat()}")
        return plan

    async def cancel(self, plan_id: int) -> Plan:
        async with self.session_factory() as session:
            plan = await self._load(session, plan_id)
            self._require_mutable(plan)
            previous = plan.status
            plan.status = PlanStatus.CANCELLED.value
            plan.updated_at = self.clock.now()
            record_audit(session, AuditAction.PLAN_CANCELLED, "plan", plan.id, plan.user_id, {"from": previous}, plan.updated_at)
            await session.commit()
        logger.info(f"🛑 PLAN_CANCELLED: plan {plan_id}")
        return plan

    async def bind_vault(self, plan_id: int, vault_address: str, vault_index: Optional[int] = None) -> Plan:
        """Attach the on-chain vault slot; a binding can never be changed"""
        if not vault_address:
            raise PlanValidationError("Vault address is required")
        async with self.session_factory() as session:
            plan = await self._load(session, plan_id)
            self._require_mutable(plan)
            if plan.vault_address is not None:
                if plan.vault_address == vault_address and plan.vault_index == vault_index:
                    return plan
                raise PlanStateError(f"Plan {plan_id} is already bound to a vault")
            plan.vault_address = vault_address
            plan.vault_index = vault_index
            plan.updated_at = self.clock.now()
            record_audit(
                session, AuditAction.PLAN_VAULT_BOUND, "plan", plan.id, plan.user_id,
                {"vault_address": vault_address, "vault_index": vault_index}, plan.updated_at,
            )
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise PlanValidationError("Vault slot already bound to another plan") from e
        logger.info(f"🔗 PLAN_VAULT_BOUND: plan {plan_id} -> {vault_address}#{vault_index}")
        return plan

    async def list_plans(self, user_id: int, include_terminal: bool = False) -> List[Plan]:
        async with self.session_factory() as session:
            query = select(Plan).where(Plan.user_id == user_id)
            if not include_terminal:
                query = query.where(Plan.status.not_in(PlanStatus.terminal()))
            result = await session.execute(query.order_by(Plan.created_at, Plan.id))
            return list(result.scalars())
