"""
Background job scheduler for the SIP platform

Jobs:
1. SIP Execution Batch - due plans through the execution pipeline
2. Deposit Funding - reconcile in-flight deposits and fund deferred ones
3. Indexer Sync - chain event reconciliation and side-effect retries
4. Lease Cleanup - expired scheduler leases
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from jobs.indexer_sync import IndexerSyncJob
from jobs.sip_execution_engine import SIPExecutionEngine
from services.chain_service import ChainService
from services.indexer_service import IndexerService
from services.oracle_service import OracleService
from services.payment_idempotency_service import PaymentIdempotencyService
from services.plan_service import PlanService
from services.receipt_archiver import ReceiptArchiver
from services.reward_service import RewardService
from services.treasury_service import TreasuryService
from utils.clock import Clock, system_clock
from utils.distributed_lock import DistributedLockService

logger = logging.getLogger(__name__)


@dataclass
class ServiceRegistry:
    """Adapters and services shared by the jobs and the webhook handlers"""
    session_factory: async_sessionmaker
    oracle: OracleService
    chain: ChainService
    rewards: RewardService
    receipts: ReceiptArchiver
    treasury: TreasuryService
    plans: PlanService
    payments: PaymentIdempotencyService
    lock_service: DistributedLockService
    engine: SIPExecutionEngine
    indexer_sync: IndexerSyncJob

    async def close(self) -> None:
        # HTTP adapters open a session per request; only the node client is long-lived
        await self.chain.close()


def build_services(session_factory: async_sessionmaker, clock: Clock = system_clock) -> ServiceRegistry:
    indexer = IndexerService()
    oracle = OracleService(clock=clock)
    chain = ChainService(indexer=indexer)
    rewards = RewardService(session_factory, clock=clock)
    receipts = ReceiptArchiver(session_factory, clock=clock)
    lock_service = DistributedLockService(
        session_factory, default_timeout=Config.SCHEDULER_LEASE_SECONDS, clock=clock
    )
    engine = SIPExecutionEngine(
        session_factory,
        oracle=oracle,
        chain=chain,
        rewards=rewards,
        receipts=receipts,
        clock=clock,
        lock_service=lock_service,
    )
    treasury = TreasuryService(session_factory, oracle=oracle, chain=chain, clock=clock)
    return ServiceRegistry(
        session_factory=session_factory,
        oracle=oracle,
        chain=chain,
        rewards=rewards,
        receipts=receipts,
        treasury=treasury,
        plans=PlanService(session_factory, clock=clock),
        payments=PaymentIdempotencyService(session_factory, clock=clock),
        lock_service=lock_service,
        engine=engine,
        indexer_sync=IndexerSyncJob(session_factory, engine, treasury=treasury, indexer=indexer, clock=clock),
    )


class SIPScheduler:
    """APScheduler wrapper; every job is single-instance and coalesced"""

    def __init__(self, services: ServiceRegistry):
        self.services = services
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }
        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    async def run_sip_batch(self) -> Optional[dict]:
        try:
            result = await self.services.engine.run_batch()
            return result.to_dict()
        except Exception as e:
            logger.error(f"❌ SIP_BATCH_JOB_FAILED: {e}", exc_info=True)
            return None

    async def run_deposit_funding(self) -> None:
        treasury = self.services.treasury
        try:
            await treasury.reconcile_processing_deposits()
            await treasury.fund_deferred_deposits()
        except Exception as e:
            logger.error(f"❌ DEPOSIT_FUNDING_JOB_FAILED: {e}", exc_info=True)

    async def run_indexer_sync(self) -> None:
        try:
            await self.services.indexer_sync.run()
        except Exception as e:
            logger.error(f"❌ INDEXER_SYNC_JOB_FAILED: {e}", exc_info=True)
        try:
            await self.services.engine.retry_side_effects()
        except Exception as e:
            logger.error(f"❌ SIDE_EFFECT_RETRY_JOB_FAILED: {e}", exc_info=True)

    async def run_lease_cleanup(self) -> None:
        try:
            await self.services.lock_service.cleanup_expired_locks()
        except Exception as e:
            logger.error(f"❌ LEASE_CLEANUP_JOB_FAILED: {e}", exc_info=True)

    def setup_jobs(self) -> None:
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        self.scheduler.add_job(
            self.run_sip_batch,
            trigger=IntervalTrigger(minutes=Config.SCHEDULER_INTERVAL_MINUTES),
            id="sip_execution_batch",
            name="SIP Execution Batch",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True,
            next_run_time=datetime.utcnow(),
        )
        logger.info(f"✅ SIP Execution Batch scheduled every {Config.SCHEDULER_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            self.run_deposit_funding,
            trigger=IntervalTrigger(minutes=Config.SCHEDULER_INTERVAL_MINUTES),
            id="deposit_funding",
            name="Deposit Funding Reconciliation",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True,
        )
        logger.info(f"✅ Deposit Funding scheduled every {Config.SCHEDULER_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            self.run_indexer_sync,
            trigger=IntervalTrigger(minutes=Config.INDEXER_SYNC_INTERVAL_MINUTES),
            id="indexer_sync",
            name="Indexer Sync",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True,
        )
        logger.info(f"✅ Indexer Sync scheduled every {Config.INDEXER_SYNC_INTERVAL_MINUTES} minutes")

        self.scheduler.add_job(
            self.run_lease_cleanup,
            trigger=IntervalTrigger(minutes=15),
            id="lease_cleanup",
            name="Expired Lease Cleanup",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
            replace_existing=True,
        )

    def start(self) -> None:
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"🚀 SIP scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 SIP scheduler stopped")
