"""
SIP Execution Engine
Finds due plans and drives each through the investment pipeline:

    SELECTED -> RECORDING -> CONVERTING -> SUBMITTING -> CONFIRMING -> SETTLING
             -> SUCCEEDED | FAILED

Guarantees:
- One batch at a time, enforced by the scheduler_batch lease. The lease is
  renewed before each plan starts; a batch that loses it starts no more plans.
- Hashed attempts left processing on paused or cancelled plans are swept
  and resolved by lookup at the end of every pass.
- At most one processing transaction per plan and due window. A crashed
  attempt is resumed: with a recorded hash it is reconciled by lookup, never
  re-submitted; without one it is reused for a fresh submission.
- Settlement writes the transaction and plan rows in a single commit.
- Oracle failures fail fast with no chain side effect and no fallback rate.
- Cancellation before submission marks the attempt cancelled. Once the
  submission starts it runs shielded so its outcome is always recorded.
- Rewards and receipts are best-effort and never undo a settlement.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import (
    Plan, PlanStatus, Receipt, Reward, Transaction, TransactionStatus, TransactionType, User
)
from services.audit_logger import AuditAction, record_audit
from services.chain_service import (
    TRANSACTION_EXPIRATION_SECONDS, ChainService, ChainUnavailableError, ConfirmationOutcome,
    EntryFunctionPayload, extract_order_id,
)
from services.oracle_service import (
    STABLE_ASSET, OracleError, OracleService, convert_fiat_to_stable, convert_stable_to_target,
    fiat_minor_to_major,
)
from services.reward_service import execution_event_id
from utils.clock import Clock, system_clock
from utils.data_sanitizer import safe_failure_reason
from utils.distributed_lock import SCHEDULER_BATCH_LOCK, DistributedLockService

logger = logging.getLogger(__name__)

# Minimum output accepted by the executor swap, in basis points of the quote
SLIPPAGE_TOLERANCE_BPS = 100


class PipelineStage(Enum):
    SELECTED = "selected"
    RECORDING = "recording"
    CONVERTING = "converting"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    SETTLING = "settling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PreconditionError(Exception):
    """Owner or vault not ready; the attempt is audited but not counted against the plan"""
    pass


@dataclass
class PlanOutcome:
    plan_id: int
    stage: PipelineStage
    transaction_id: Optional[int] = None
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    # True while the on-chain result is unknown and the row stays processing
    pending: bool = False
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.stage == PipelineStage.SUCCEEDED


@dataclass
class BatchResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
    lease_acquired: bool = True
    outcomes: List[PlanOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "pending": self.pending,
            "errors": self.errors,
            "lease_acquired": self.lease_acquired,
        }


@dataclass
class _Quote:
    stable_units: int
    target_units: int
    exchange_rate: Optional[Decimal]


async def select_due_plans(session: AsyncSession, now) -> List[Plan]:
    """Active plans whose next_execution has passed. Read only."""
    result = await session.execute(
        select(Plan)
        .where(Plan.status == PlanStatus.ACTIVE.value, Plan.next_execution <= now)
        .order_by(Plan.next_execution, Plan.id)
    )
    return list(result.scalars())


class SIPExecutionEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        oracle: OracleService,
        chain: ChainService,
        rewards=None,
        receipts=None,
        clock: Clock = system_clock,
        signer=None,
        lock_service: Optional[DistributedLockService] = None,
        max_concurrency: Optional[int] = None,
        plan_timeout: Optional[float] = None,
        confirmation_timeout: Optional[float] = None,
        fill_timeout: Optional[float] = None,
        fill_poll_interval: Optional[float] = None,
        failure_threshold: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.oracle = oracle
        self.chain = chain
        self.rewards = rewards
        self.receipts = receipts
        self.clock = clock
        self._signer = signer
        self.lock_service = lock_service or DistributedLockService(
            session_factory, default_timeout=Config.SCHEDULER_LEASE_SECONDS, clock=clock
        )
        self.max_concurrency = max_concurrency or Config.SCHEDULER_MAX_CONCURRENCY
        self.plan_timeout = plan_timeout or Config.PLAN_EXECUTION_TIMEOUT_SECONDS
        self.confirmation_timeout = confirmation_timeout or Config.CONFIRMATION_TIMEOUT_SECONDS
        self.fill_timeout = fill_timeout if fill_timeout is not None else Config.FILL_TIMEOUT_SECONDS
        self.fill_poll_interval = fill_poll_interval or Config.FILL_POLL_INTERVAL_SECONDS
        self.failure_threshold = failure_threshold or Config.AUTO_PAUSE_THRESHOLD
        # plan id -> shielded submission task that may outlive a timed-out pipeline
        self._inflight: Dict[int, asyncio.Future] = {}

    @property
    def signer(self):
        if self._signer is None:
            self._signer = ChainService.load_signer(Config.SCHEDULER_PRIVATE_KEY)
        return self._signer

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run_batch(self) -> BatchResult:
        """Run one scheduler pass; returns processed/successful/failed counts"""
        started = self.clock.now()
        async with self.lock_service.lease(
            SCHEDULER_BATCH_LOCK, metadata={"started_at": started.isoformat()}
        ) as lease:
            if not lease.acquired:
                logger.warning(f"⏳ SIP_BATCH_SKIPPED: {lease.error}")
                return BatchResult(lease_acquired=False)

            async with self.session_factory() as session:
                plan_ids = [plan.id for plan in await select_due_plans(session, started)]

            if plan_ids:
                batch = await self._run_plans(plan_ids)
            else:
                logger.debug("📭 SIP_BATCH: no due plans")
                batch = BatchResult()

            try:
                await self.reconcile_orphaned_attempts()
            except Exception as e:
                logger.error(f"❌ SIP_ORPHAN_SWEEP_ERROR: {e}", exc_info=True)

        elapsed = (self.clock.now() - started).total_seconds()
        logger.info(
            f"🏁 SIP_BATCH_DONE: processed={batch.processed} successful={batch.successful} "
            f"failed={batch.failed} pending={batch.pending} errors={batch.errors} in {elapsed:.1f}s"
        )
        return batch

    async def _run_plans(self, plan_ids: List[int]) -> BatchResult:
        """
        Each plan renews the lease before it starts, so the lease always
        outlives the plans in flight (lease TTL > plan timeout + confirmation
        wait). Once the lease is lost no further plan is started.
        """
        logger.info(f"🚀 SIP_BATCH_START: {len(plan_ids)} due plan(s), concurrency={self.max_concurrency}")
        semaphore = asyncio.Semaphore(self.max_concurrency)
        lease_lost = False

        async def run_one(plan_id: int) -> PlanOutcome:
            nonlocal lease_lost
            async with semaphore:
                if lease_lost or not await self.lock_service.renew(SCHEDULER_BATCH_LOCK):
                    lease_lost = True
                    return PlanOutcome(plan_id, PipelineStage.SELECTED, skipped=True, reason="lease lost")
                return await asyncio.wait_for(self.execute_plan(plan_id), timeout=self.plan_timeout)

        results = await asyncio.gather(*(run_one(pid) for pid in plan_ids), return_exceptions=True)
        batch = BatchResult()
        try:
            for plan_id, result in zip(plan_ids, results):
                if isinstance(result, asyncio.TimeoutError):
                    result = await self._outcome_after_timeout(plan_id)
                if isinstance(result, BaseException):
                    batch.errors += 1
                    logger.error(
                        f"❌ SIP_PLAN_ERROR: plan {plan_id} raised {type(result).__name__}: {result}",
                        exc_info=(type(result), result, result.__traceback__),
                    )
                    continue
                if result.skipped:
                    continue
                batch.outcomes.append(result)
                batch.processed += 1
                if result.succeeded:
                    batch.successful += 1
                elif result.pending:
                    batch.pending += 1
                else:
                    batch.failed += 1
        finally:
            self._inflight.clear()

        if lease_lost:
            logger.error("❌ SIP_BATCH_LEASE_LOST: remaining plans left for the next pass")
        return batch

    async def _outcome_after_timeout(self, plan_id: int):
        """A timed-out pipeline may have a shielded submission still running; wait for its result"""
        task = self._inflight.get(plan_id)
        if task is None:
            logger.warning(f"⏱️ SIP_PLAN_TIMEOUT: plan {plan_id} cancelled before submission")
            return PlanOutcome(plan_id, PipelineStage.FAILED, reason="cancelled")
        logger.warning(f"⏱️ SIP_PLAN_TIMEOUT: plan {plan_id} timed out after submission, awaiting outcome")
        try:
            return await task
        except Exception as e:
            return e
        finally:
            self._inflight.pop(plan_id, None)

    # ------------------------------------------------------------------
    # Per-plan pipeline
    # ------------------------------------------------------------------

    async def execute_plan(self, plan_id: int) -> PlanOutcome:
        now = self.clock.now()

        # SELECTED
        async with self.session_factory() as session:
            plan = await session.get(Plan, plan_id)
            if plan is None or plan.status != PlanStatus.ACTIVE.value or plan.next_execution > now:
                return PlanOutcome(plan_id, PipelineStage.SELECTED, skipped=True, reason="not due")
            user = await session.get(User, plan.user_id)
            due_window = plan.next_execution
            existing = await self._find_open_attempt(session, plan_id)

        if existing is not None and existing.tx_hash:
            return await self.reconcile_attempt(existing.id)

        try:
            vault_address = self._check_preconditions(plan, user)
        except PreconditionError as e:
            if existing is not None:
                await self._fail(existing.id, safe_failure_reason("user_incomplete"), counted=False)
                logger.warning(f"⚠️ SIP_PRECONDITION_FAILED: plan {plan_id} tx {existing.id}: {e}")
                return PlanOutcome(plan_id, PipelineStage.FAILED, existing.id, reason="user_incomplete")
            return await self._record_precondition_failure(plan, due_window, str(e))

        tx_id = None
        try:
            # RECORDING
            tx_id = await self._record_attempt(plan, due_window, existing)

            # CONVERTING
            try:
                quote = await self._convert(plan)
            except OracleError as e:
                logger.error(f"❌ SIP_CONVERSION_FAILED: plan {plan_id} tx {tx_id}: {e}")
                await self._fail(tx_id, safe_failure_reason("conversion_error"))
                return PlanOutcome(plan_id, PipelineStage.FAILED, tx_id, reason="conversion_error")

            payload = self.chain.build_execution_payload(
                vault_address,
                plan.vault_index,
                quote.stable_units,
                quote.target_units * (10000 - SLIPPAGE_TOLERANCE_BPS) // 10000,
            )
        except asyncio.CancelledError:
            if tx_id is not None:
                await self._fail(tx_id, safe_failure_reason("cancelled"))
                logger.warning(f"🛑 SIP_CANCELLED: plan {plan_id} tx {tx_id} before submission")
            raise
        except Exception as e:
            if tx_id is not None:
                await self._fail(tx_id, safe_failure_reason("internal_error"))
            logger.error(f"❌ SIP_PRESUBMIT_ERROR: plan {plan_id}: {e}", exc_info=True)
            raise

        # SUBMITTING onwards cannot be abandoned: the outcome must be recorded
        task = asyncio.ensure_future(self._submit_and_settle(plan_id, tx_id, vault_address, payload, quote))
        self._inflight[plan_id] = task
        return await asyncio.shield(task)

    @staticmethod
    def _check_preconditions(plan: Plan, user: Optional[User]) -> str:
        if user is None:
            raise PreconditionError(f"owner {plan.user_id} not found")
        if not user.wallet_address:
            raise PreconditionError(f"user {user.id} has no wallet")
        vault_address = plan.vault_address or user.vault_address
        if not vault_address:
            raise PreconditionError(f"user {user.id} has no vault")
        return vault_address

    @staticmethod
    async def _find_open_attempt(session: AsyncSession, plan_id: int) -> Optional[Transaction]:
        result = await session.execute(
            select(Transaction)
            .where(
                Transaction.plan_id == plan_id,
                Transaction.type == TransactionType.SIP_EXECUTION.value,
                Transaction.status == TransactionStatus.PROCESSING.value,
            )
            .order_by(Transaction.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _record_precondition_failure(self, plan: Plan, due_window, reason: str) -> PlanOutcome:
        """One audited failed row per due window; failure counters untouched"""
        message = safe_failure_reason("user_incomplete")
        now = self.clock.now()
        async with self.session_factory() as session:
            already = (
                await session.execute(
                    select(Transaction.id).where(
                        Transaction.plan_id == plan.id,
                        Transaction.status == TransactionStatus.FAILED.value,
                        Transaction.due_window == due_window,
                        Transaction.error_message == message,
                    )
                )
            ).first()
            if already is not None:
                logger.debug(f"⚠️ SIP_PRECONDITION_REPEAT: plan {plan.id}: {reason}")
                return PlanOutcome(plan.id, PipelineStage.FAILED, already[0], reason="user_incomplete")

            tx = Transaction(
                user_id=plan.user_id,
                plan_id=plan.id,
                type=TransactionType.SIP_EXECUTION.value,
                status=TransactionStatus.FAILED.value,
                amount_in=plan.amount,
                asset_in=plan.input_asset,
                asset_out=plan.target_asset,
                due_window=due_window,
                error_message=message,
                created_at=now,
                completed_at=now,
            )
            session.add(tx)
            await session.flush()
            record_audit(
                session, AuditAction.PRECONDITION_FAILED, "plan", plan.id, plan.user_id,
                {"reason": reason, "transaction_id": tx.id, "due_window": due_window.isoformat()}, now,
            )
            await session.commit()

        logger.warning(f"⚠️ SIP_PRECONDITION_FAILED: plan {plan.id}: {reason}")
        return PlanOutcome(plan.id, PipelineStage.FAILED, tx.id, reason="user_incomplete")

    async def _record_attempt(self, plan: Plan, due_window, existing: Optional[Transaction]) -> int:
        now = self.clock.now()
        async with self.session_factory() as session:
            if existing is not None:
                tx = await session.get(Transaction, existing.id)
                tx.due_window = due_window
                tx.amount_in = plan.amount
                tx.retry_count += 1
                await session.commit()
                logger.info(f"♻️ SIP_ATTEMPT_RESUMED: plan {plan.id} reusing tx {tx.id} for window {due_window.isoformat()}")
                return tx.id

            tx = Transaction(
                user_id=plan.user_id,
                plan_id=plan.id,
                type=TransactionType.SIP_EXECUTION.value,
                status=TransactionStatus.PROCESSING.value,
                amount_in=plan.amount,
                asset_in=plan.input_asset or "INR",
                asset_out=plan.target_asset,
                due_window=due_window,
                created_at=now,
            )
            session.add(tx)
            await session.commit()
        logger.info(f"📝 SIP_ATTEMPT_RECORDED: plan {plan.id} tx {tx.id} amount={plan.amount}")
        return tx.id

    async def _convert(self, plan: Plan) -> _Quote:
        """Fresh quotes only; floor at every step"""
        input_asset = (plan.input_asset or "INR").upper()
        if input_asset == STABLE_ASSET:
            stable_units = plan.amount
            fiat_rate = None
        else:
            fiat_rate = (await self.oracle.get_fiat_rate()).rate
            stable_units = convert_fiat_to_stable(fiat_minor_to_major(plan.amount), fiat_rate)

        asset_rate = await self.oracle.get_asset_rate(STABLE_ASSET, plan.target_asset)
        target_units = convert_stable_to_target(stable_units, asset_rate, plan.target_asset)
        if stable_units <= 0 or target_units <= 0:
            raise OracleError("oracle", f"Amount {plan.amount} converts to zero {plan.target_asset}", retryable=False)

        # Input currency per whole target unit
        exchange_rate = (fiat_rate or Decimal(1)) / asset_rate
        logger.info(
            f"💱 SIP_CONVERTED: plan {plan.id} {plan.amount} {input_asset} -> {stable_units} {STABLE_ASSET} units "
            f"-> {target_units} {plan.target_asset} units"
        )
        return _Quote(stable_units, target_units, exchange_rate)

    async def _submit_and_settle(
        self, plan_id: int, tx_id: int, vault_address: str, payload: EntryFunctionPayload, quote: _Quote
    ) -> PlanOutcome:
        # SUBMITTING
        try:
            submitted = await self.chain.submit(payload, self.signer)
        except ChainUnavailableError as e:
            if e.tx_hash is None:
                logger.error(f"❌ SIP_SUBMIT_FAILED: plan {plan_id} tx {tx_id}: {e}")
                await self._fail(tx_id, safe_failure_reason("chain_unconfirmed"))
                return PlanOutcome(plan_id, PipelineStage.FAILED, tx_id, reason="submit_failed")
            await self._record_submission(tx_id, e.tx_hash, quote)
            logger.warning(f"⚠️ SIP_SUBMIT_AMBIGUOUS: plan {plan_id} tx {tx_id} hash={e.tx_hash}: {e}")
            return PlanOutcome(plan_id, PipelineStage.SUBMITTING, tx_id, e.tx_hash, reason="ambiguous_submit", pending=True)

        if not submitted.success:
            await self._fail(tx_id, safe_failure_reason("chain_rejected", submitted.error))
            return PlanOutcome(plan_id, PipelineStage.FAILED, tx_id, reason="chain_rejected")

        await self._record_submission(tx_id, submitted.hash, quote)

        # CONFIRMING
        try:
            outcome = await self.chain.wait_for_confirmation(submitted.hash, timeout=self.confirmation_timeout)
        except ChainUnavailableError as e:
            logger.warning(f"⚠️ SIP_UNCONFIRMED: plan {plan_id} tx {tx_id} hash={submitted.hash}: {e}")
            return PlanOutcome(plan_id, PipelineStage.CONFIRMING, tx_id, submitted.hash, reason="unconfirmed", pending=True)

        if not outcome.success:
            logger.error(f"❌ SIP_CHAIN_FAILED: plan {plan_id} tx {tx_id} vm_status={outcome.vm_status}")
            await self._fail(tx_id, safe_failure_reason("chain_rejected", outcome.vm_status))
            return PlanOutcome(plan_id, PipelineStage.FAILED, tx_id, submitted.hash, reason="chain_rejected")

        amount_out, fill_confirmed = await self._await_fill(plan_id, vault_address, payload, outcome, quote)

        # SETTLING
        return await self._settle(tx_id, outcome, amount_out, fill_confirmed)

    async def _await_fill(
        self, plan_id: int, vault_address: str, payload: EntryFunctionPayload,
        outcome: ConfirmationOutcome, quote: _Quote,
    ):
        """Filled amount for DEX orders; the quoted amount when no fill is observed"""
        if not payload.places_order:
            return quote.target_units, True

        order_id = extract_order_id(outcome.events)
        if order_id is None:
            logger.warning(f"⚠️ SIP_ORDER_ID_MISSING: plan {plan_id} hash={outcome.tx_hash}, settling on quote")
            return quote.target_units, False

        fill = await self.chain.wait_for_fill(
            vault_address, order_id, timeout=self.fill_timeout, poll_interval=self.fill_poll_interval
        )
        if fill is None:
            logger.warning(f"⚠️ SIP_DEGRADED_SUCCESS: plan {plan_id} order {order_id} fill not observed, settling on quote")
            return quote.target_units, False
        return fill.fill_amount, True

    async def _record_submission(self, tx_id: int, tx_hash: str, quote: _Quote) -> None:
        async with self.session_factory() as session:
            tx = await session.get(Transaction, tx_id)
            tx.tx_hash = tx_hash
            tx.amount_out = quote.target_units
            tx.exchange_rate = quote.exchange_rate
            tx.submitted_at = self.clock.now()
            await session.commit()

    # ------------------------------------------------------------------
    # Terminal writes
    # ------------------------------------------------------------------

    async def _settle(
        self, tx_id: int, outcome: ConfirmationOutcome, amount_out: Optional[int], fill_confirmed: bool
    ) -> PlanOutcome:
        """Transaction success and plan statistics in one commit"""
        now = self.clock.now()
        async with self.session_factory() as session:
            tx = await session.get(Transaction, tx_id)
            plan = await session.get(Plan, tx.plan_id)
            if tx.is_terminal:
                logger.info(f"🔁 SIP_ALREADY_TERMINAL: tx {tx_id} is {tx.status}")
                stage = PipelineStage.SUCCEEDED if tx.status == TransactionStatus.SUCCESS.value else PipelineStage.FAILED
                return PlanOutcome(plan.id, stage, tx_id, tx.tx_hash, reason="already_terminal")

            received = amount_out if amount_out is not None else (tx.amount_out or 0)
            tx.status = TransactionStatus.SUCCESS.value
            tx.tx_hash = outcome.tx_hash
            tx.block_version = outcome.version
            tx.amount_out = received
            tx.fill_confirmed = fill_confirmed
            tx.error_message = None
            tx.completed_at = now

            plan.total_invested += tx.amount_in
            plan.total_received += received
            plan.average_price = (
                Decimal(plan.total_invested) / Decimal(plan.total_received) if plan.total_received > 0 else Decimal("0")
            )
            plan.execution_count += 1
            plan.consecutive_failures = 0
            plan.last_executed_at = now
            plan.next_execution = now + timedelta(seconds=plan.interval_seconds)
            plan.updated_at = now
            await session.commit()
            plan_id, user_id, amount_in = plan.id, plan.user_id, tx.amount_in

        logger.info(
            f"✅ SIP_SETTLED: plan {plan_id} tx {tx_id} hash={outcome.tx_hash} out={received} "
            f"execution #{plan.execution_count} next={plan.next_execution.isoformat()}"
        )
        await self._run_side_effects(user_id, plan_id, tx_id, amount_in)
        return PlanOutcome(plan_id, PipelineStage.SUCCEEDED, tx_id, outcome.tx_hash)

    async def _fail(self, tx_id: int, message: str, counted: bool = True) -> None:
        """Terminal failure; counted failures advance the auto-pause counter"""
        now = self.clock.now()
        async with self.session_factory() as session:
            tx = await session.get(Transaction, tx_id)
            if tx.is_terminal:
                return
            tx.status = TransactionStatus.FAILED.value
            tx.error_message = message
            tx.completed_at = now
            if counted and tx.plan_id is not None:
                plan = await session.get(Plan, tx.plan_id)
                self._count_failure(session, plan, now, tx_id)
            await session.commit()
        logger.info(f"❌ SIP_FAILED: tx {tx_id}: {message}")

    def _count_failure(self, session: AsyncSession, plan: Plan, now, tx_id: int) -> None:
        plan.consecutive_failures += 1
        plan.total_failures += 1
        plan.updated_at = now
        if plan.consecutive_failures >= self.failure_threshold and plan.status == PlanStatus.ACTIVE.value:
            plan.status = PlanStatus.PAUSED.value
            record_audit(
                session, AuditAction.PLAN_AUTO_PAUSED, "plan", plan.id, plan.user_id,
                {"consecutive_failures": plan.consecutive_failures, "last_transaction_id": tx_id}, now,
            )
            logger.warning(
                f"⏸️ SIP_AUTO_PAUSED: plan {plan.id} after {plan.consecutive_failures} consecutive failures"
            )

    async def _run_side_effects(self, user_id: int, plan_id: int, tx_id: int, amount_in: int) -> None:
        if self.rewards is not None:
            try:
                await self.rewards.trigger_execution_reward(user_id, plan_id, tx_id, amount_in)
            except Exception as e:
                logger.warning(f"⚠️ SIP_REWARD_DEFERRED: plan {plan_id} tx {tx_id}: {e}")
        if self.receipts is not None:
            try:
                await self.receipts.archive_execution_receipt(tx_id)
            except Exception as e:
                logger.warning(f"⚠️ SIP_RECEIPT_DEFERRED: plan {plan_id} tx {tx_id}: {e}")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_attempt(self, tx_id: int, count_unknown: bool = True) -> PlanOutcome:
        """
        Resolve a processing transaction that already has a hash.

        Confirmed success settles, confirmed failure fails. An unknown hash
        past the signing expiry never landed and fails. Anything else stays
        processing and, when count_unknown is set, counts one failure
        against the plan.
        """
        async with self.session_factory() as session:
            tx = await session.get(Transaction, tx_id)
            plan_id = tx.plan_id
            tx_hash = tx.tx_hash
            submitted_at = tx.submitted_at or tx.created_at
            if tx.is_terminal:
                stage = PipelineStage.SUCCEEDED if tx.status == TransactionStatus.SUCCESS.value else PipelineStage.FAILED
                return PlanOutcome(plan_id, stage, tx_id, tx_hash, reason="already_terminal")

        logger.info(f"🔎 SIP_RECONCILE: plan {plan_id} tx {tx_id} hash={tx_hash}")
        try:
            outcome = await self.chain.lookup_transaction(tx_hash)
        except ChainUnavailableError as e:
            logger.warning(f"⚠️ SIP_RECONCILE_LOOKUP_FAILED: tx {tx_id}: {e}")
            outcome = None

        if outcome is not None:
            if outcome.success:
                return await self._settle(tx_id, outcome, None, False)
            await self._fail(tx_id, safe_failure_reason("chain_rejected", outcome.vm_status))
            return PlanOutcome(plan_id, PipelineStage.FAILED, tx_id, tx_hash, reason="chain_rejected")

        now = self.clock.now()
        if now - submitted_at > timedelta(seconds=TRANSACTION_EXPIRATION_SECONDS):
            logger.warning(f"⌛ SIP_HASH_EXPIRED: tx {tx_id} hash={tx_hash} never landed")
            await self._fail(tx_id, safe_failure_reason("chain_unconfirmed"))
            return PlanOutcome(plan_id, PipelineStage.FAILED, tx_id, tx_hash, reason="expired")

        if not count_unknown:
            return PlanOutcome(plan_id, PipelineStage.CONFIRMING, tx_id, tx_hash, reason="unconfirmed", pending=True)

        async with self.session_factory() as session:
            tx = await session.get(Transaction, tx_id)
            plan = await session.get(Plan, plan_id)
            tx.retry_count += 1
            self._count_failure(session, plan, now, tx_id)
            await session.commit()
        logger.warning(f"⏳ SIP_STILL_UNCONFIRMED: plan {plan_id} tx {tx_id} hash={tx_hash}")
        return PlanOutcome(plan_id, PipelineStage.CONFIRMING, tx_id, tx_hash, reason="unconfirmed", pending=True)

    async def reconcile_orphaned_attempts(self) -> List[PlanOutcome]:
        """
        Hashed attempts still processing on plans that are no longer active
        (auto-paused mid-confirmation, paused or cancelled by the owner).
        Due selection never revisits those plans, so resolve them here. An
        unknown hash is left alone until it lands or expires.
        """
        async with self.session_factory() as session:
            tx_ids = list(
                (
                    await session.execute(
                        select(Transaction.id)
                        .join(Plan, Plan.id == Transaction.plan_id)
                        .where(
                            Transaction.type == TransactionType.SIP_EXECUTION.value,
                            Transaction.status == TransactionStatus.PROCESSING.value,
                            Transaction.tx_hash.is_not(None),
                            Plan.status != PlanStatus.ACTIVE.value,
                        )
                        .order_by(Transaction.id)
                    )
                ).scalars()
            )

        outcomes = []
        for tx_id in tx_ids:
            outcome = await self.reconcile_attempt(tx_id, count_unknown=False)
            if not outcome.pending:
                logger.info(f"🧹 SIP_ORPHAN_RESOLVED: tx {tx_id} -> {outcome.stage.value} ({outcome.reason})")
            outcomes.append(outcome)
        return outcomes

    async def reconcile_by_hash(self, tx_hash: str, version: Optional[str] = None) -> Optional[PlanOutcome]:
        """Settle a processing execution seen by the indexer; None if no such row is open"""
        async with self.session_factory() as session:
            tx = (
                await session.execute(
                    select(Transaction).where(
                        Transaction.tx_hash == tx_hash,
                        Transaction.type == TransactionType.SIP_EXECUTION.value,
                    )
                )
            ).scalar_one_or_none()
            if tx is None or tx.is_terminal:
                return None
            tx_id = tx.id
        return await self._settle(tx_id, ConfirmationOutcome(success=True, tx_hash=tx_hash, version=version), None, False)

    async def retry_side_effects(self, lookback_hours: int = 24) -> Dict[str, int]:
        """Re-run reward and receipt steps for recent settlements that lack them"""
        since = self.clock.now() - timedelta(hours=lookback_hours)
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(Transaction.id, Transaction.user_id, Transaction.plan_id, Transaction.amount_in).where(
                        Transaction.type == TransactionType.SIP_EXECUTION.value,
                        Transaction.status == TransactionStatus.SUCCESS.value,
                        Transaction.completed_at >= since,
                    )
                )
            ).all()
            rewarded = set((await session.execute(select(Reward.event_id))).scalars())
            receipted = set(
                (await session.execute(select(Receipt.transaction_id).where(Receipt.transaction_id.is_not(None)))).scalars()
            )

        counts = {"rewards": 0, "receipts": 0}
        for tx_id, user_id, plan_id, amount_in in rows:
            if self.rewards is not None and execution_event_id(plan_id, tx_id) not in rewarded:
                try:
                    outcome = await self.rewards.trigger_execution_reward(user_id, plan_id, tx_id, amount_in)
                    if outcome.status == "credited":
                        counts["rewards"] += 1
                except Exception as e:
                    logger.warning(f"⚠️ REWARD_RETRY_FAILED: tx {tx_id}: {e}")
            if self.receipts is not None and tx_id not in receipted:
                try:
                    await self.receipts.archive_execution_receipt(tx_id)
                    counts["receipts"] += 1
                except Exception as e:
                    logger.warning(f"⚠️ RECEIPT_RETRY_FAILED: tx {tx_id}: {e}")
        if counts["rewards"] or counts["receipts"]:
            logger.info(f"🔁 SIDE_EFFECTS_RETRIED: {counts}")
        return counts
