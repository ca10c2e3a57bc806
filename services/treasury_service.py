"""
Treasury funding: bridges captured fiat deposits into users' on-chain vaults.

Conversion uses the same floor rule as plan execution. Deposits are signed
with the treasury key, which is never the scheduler's execution key. Users
without a provisioned vault have their deposits deferred (kept pending) and
funded once the vault exists.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import Transaction, TransactionStatus, TransactionType, User
from services.chain_service import (
    ChainService, ChainUnavailableError, build_deposit_for_user_payload
)
from services.oracle_service import (
    OracleError, OracleService, convert_fiat_to_stable, fiat_minor_to_major
)
from utils.clock import Clock, system_clock
from utils.data_sanitizer import safe_failure_reason

logger = logging.getLogger(__name__)

MAX_FUNDING_ATTEMPTS = 3


@dataclass
class FundingResult:
    transaction_id: int
    status: str  # funded | deferred | retry | awaiting_confirmation | failed | skipped
    tx_hash: Optional[str] = None
    stable_units: Optional[int] = None
    reason: Optional[str] = None


class TreasuryService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        oracle: OracleService,
        chain: ChainService,
        treasury_signer=None,
        clock: Clock = system_clock,
        confirmation_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.oracle = oracle
        self.chain = chain
        self._signer = treasury_signer
        self.clock = clock
        self.confirmation_timeout = confirmation_timeout or Config.CONFIRMATION_TIMEOUT_SECONDS

    @property
    def signer(self):
        if self._signer is None:
            self._signer = ChainService.load_signer(Config.TREASURY_PRIVATE_KEY)
        return self._signer

    async def _claim(self, transaction_id: int) -> bool:
        """pending -> processing; only one caller can win"""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING.value)
                .values(status=TransactionStatus.PROCESSING.value)
            )
            await session.commit()
            return result.rowcount == 1

    async def _release_for_retry(self, transaction_id: int, message: str) -> str:
        """
        processing -> pending for a later attempt, or failed once attempts are
        exhausted. Conditional on the claim still being held, so a row that
        another worker moved on is never touched.
        """
        async with self.session_factory() as session:
            retry_count = (
                await session.execute(
                    select(Transaction.retry_count).where(
                        Transaction.id == transaction_id,
                        Transaction.status == TransactionStatus.PROCESSING.value,
                    )
                )
            ).scalar_one_or_none()
            if retry_count is None:
                logger.warning(f"⚠️ FUNDING_RELEASE_SKIPPED: deposit {transaction_id} is no longer processing")
                return "skipped"

            attempts = retry_count + 1
            values = {"retry_count": attempts, "error_message": message}
            if attempts >= MAX_FUNDING_ATTEMPTS:
                values.update(status=TransactionStatus.FAILED.value, completed_at=self.clock.now())
                outcome = "failed"
            else:
                values.update(status=TransactionStatus.PENDING.value)
                outcome = "retry"
            result = await session.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.status == TransactionStatus.PROCESSING.value,
                    Transaction.retry_count == retry_count,
                )
                .values(**values)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning(f"⚠️ FUNDING_RELEASE_SKIPPED: deposit {transaction_id} changed concurrently")
            return "skipped"
        return outcome

    async def fund_deposit(self, transaction_id: int) -> FundingResult:
        """Fund the vault for one captured deposit"""
        async with self.session_factory() as session:
            tx = await session.get(Transaction, transaction_id)
            if tx is None or tx.type != TransactionType.DEPOSIT.value:
                raise ValueError(f"Deposit transaction {transaction_id} not found")
            if tx.status != TransactionStatus.PENDING.value:
                return FundingResult(transaction_id, "skipped", tx_hash=tx.tx_hash, reason=f"status={tx.status}")
            user = await session.get(User, tx.user_id)
            vault_address = user.vault_address if user else None
            amount_paise = tx.amount_in

        if not vault_address:
            logger.info(f"⏸️ FUNDING_DEFERRED: deposit {transaction_id} waits for vault provisioning")
            return FundingResult(transaction_id, "deferred", reason="vault not provisioned")

        # Everything past the claim is done by this worker alone
        if not await self._claim(transaction_id):
            return FundingResult(transaction_id, "skipped", reason="claimed by another worker")

        try:
            return await self._fund_claimed(transaction_id, vault_address, amount_paise)
        except Exception as e:
            logger.error(f"❌ FUNDING_ERROR: deposit {transaction_id}: {e}", exc_info=True)
            async with self.session_factory() as session:
                tx = await session.get(Transaction, transaction_id)
                sent_hash = tx.tx_hash if tx.status == TransactionStatus.PROCESSING.value else None
            if sent_hash is not None:
                # Reconciliation resolves it by hash; re-sending could fund twice
                return FundingResult(transaction_id, "awaiting_confirmation", tx_hash=sent_hash, reason="internal_error")
            status = await self._release_for_retry(transaction_id, safe_failure_reason("internal_error"))
            return FundingResult(transaction_id, status, reason="internal_error")

    async def _fund_claimed(self, transaction_id: int, vault_address: str, amount_paise: int) -> FundingResult:
        try:
            fiat_rate = await self.oracle.get_fiat_rate()
        except OracleError as e:
            logger.error(f"❌ FUNDING_ORACLE_FAILED: deposit {transaction_id}: {e}")
            status = await self._release_for_retry(transaction_id, safe_failure_reason("conversion_error"))
            return FundingResult(transaction_id, status, reason="conversion_error")

        stable_units = convert_fiat_to_stable(fiat_minor_to_major(amount_paise), fiat_rate.rate)
        if stable_units <= 0:
            logger.error(f"❌ FUNDING_ZERO_AMOUNT: deposit {transaction_id} converts to {stable_units} USDC units")
            status = await self._release_for_retry(transaction_id, safe_failure_reason("conversion_error"))
            return FundingResult(transaction_id, status, reason="conversion_error")

        payload = build_deposit_for_user_payload(vault_address, stable_units)
        try:
            submitted = await self.chain.submit(payload, self.signer)
        except ChainUnavailableError as e:
            logger.warning(f"⚠️ FUNDING_SUBMIT_AMBIGUOUS: deposit {transaction_id} hash={e.tx_hash}: {e}")
            if e.tx_hash is None:
                status = await self._release_for_retry(transaction_id, safe_failure_reason("chain_unconfirmed"))
                return FundingResult(transaction_id, status, reason="submit_failed")
            await self._record_hash(transaction_id, e.tx_hash, stable_units, fiat_rate.rate)
            return FundingResult(transaction_id, "awaiting_confirmation", tx_hash=e.tx_hash, stable_units=stable_units)

        if not submitted.success:
            status = await self._release_for_retry(
                transaction_id, safe_failure_reason("chain_rejected", submitted.error)
            )
            return FundingResult(transaction_id, status, reason="chain_rejected")

        await self._record_hash(transaction_id, submitted.hash, stable_units, fiat_rate.rate)
        try:
            outcome = await self.chain.wait_for_confirmation(submitted.hash, timeout=self.confirmation_timeout)
        except ChainUnavailableError as e:
            logger.warning(f"⚠️ FUNDING_UNCONFIRMED: deposit {transaction_id} hash={submitted.hash}: {e}")
            return FundingResult(transaction_id, "awaiting_confirmation", tx_hash=submitted.hash, stable_units=stable_units)

        return await self._apply_outcome(transaction_id, outcome.success, outcome.vm_status, outcome.version)

    async def _record_hash(self, transaction_id: int, tx_hash: Optional[str], stable_units: int, rate) -> None:
        async with self.session_factory() as session:
            tx = await session.get(Transaction, transaction_id)
            tx.tx_hash = tx_hash
            tx.amount_out = stable_units
            tx.exchange_rate = rate
            tx.submitted_at = self.clock.now() if tx_hash else None
            await session.commit()

    async def _apply_outcome(self, transaction_id: int, success: bool, vm_status: Optional[str], version: Optional[str]) -> FundingResult:
        async with self.session_factory() as session:
            tx = await session.get(Transaction, transaction_id)
            if success:
                tx.status = TransactionStatus.SUCCESS.value
                tx.block_version = version
                tx.completed_at = self.clock.now()
                tx.error_message = None
                await session.commit()
                logger.info(f"✅ VAULT_FUNDED: deposit {transaction_id} {tx.amount_out} USDC units hash={tx.tx_hash}")
                return FundingResult(transaction_id, "funded", tx_hash=tx.tx_hash, stable_units=tx.amount_out)
            # Rejected on-chain: the hash is spent, clear it so a retry can record a new one
            failed_hash = tx.tx_hash
            tx.tx_hash = None
            await session.commit()

        logger.error(f"❌ VAULT_FUNDING_REJECTED: deposit {transaction_id} hash={failed_hash} vm_status={vm_status}")
        status = await self._release_for_retry(transaction_id, safe_failure_reason("chain_rejected", vm_status))
        return FundingResult(transaction_id, status, tx_hash=failed_hash, reason="chain_rejected")

    async def reconcile_processing_deposits(self) -> List[FundingResult]:
        """Resolve deposits left processing by an ambiguous submission"""
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(Transaction.id, Transaction.tx_hash).where(
                        Transaction.type == TransactionType.DEPOSIT.value,
                        Transaction.status == TransactionStatus.PROCESSING.value,
                        Transaction.tx_hash.is_not(None),
                    )
                )
            ).all()

        results = []
        for transaction_id, tx_hash in rows:
            try:
                outcome = await self.chain.lookup_transaction(tx_hash)
            except ChainUnavailableError as e:
                logger.warning(f"⚠️ DEPOSIT_RECONCILE_DEFERRED: {transaction_id}: {e}")
                continue
            if outcome is None:
                continue
            results.append(await self._apply_outcome(transaction_id, outcome.success, outcome.vm_status, outcome.version))
        return results

    async def reconcile_by_hash(self, tx_hash: str, version: Optional[str] = None) -> Optional[FundingResult]:
        """Mark a processing deposit funded when the indexer reports its hash"""
        async with self.session_factory() as session:
            transaction_id = (
                await session.execute(
                    select(Transaction.id).where(
                        Transaction.tx_hash == tx_hash,
                        Transaction.type == TransactionType.DEPOSIT.value,
                        Transaction.status == TransactionStatus.PROCESSING.value,
                    )
                )
            ).scalar_one_or_none()
        if transaction_id is None:
            return None
        return await self._apply_outcome(transaction_id, True, None, version)

    async def fund_deferred_deposits(self, user_id: Optional[int] = None) -> List[FundingResult]:
        """Fund pending deposits whose owners now have a vault"""
        async with self.session_factory() as session:
            query = (
                select(Transaction.id)
                .join(User, User.id == Transaction.user_id)
                .where(
                    Transaction.type == TransactionType.DEPOSIT.value,
                    Transaction.status == TransactionStatus.PENDING.value,
                    User.vault_address.is_not(None),
                )
                .order_by(Transaction.id)
            )
            if user_id is not None:
                query = query.where(Transaction.user_id == user_id)
            deposit_ids = list((await session.execute(query)).scalars())

        results = []
        for deposit_id in deposit_ids:
            try:
                results.append(await self.fund_deposit(deposit_id))
            except Exception as e:
                logger.error(f"❌ DEFERRED_FUNDING_ERROR: deposit {deposit_id}: {e}", exc_info=True)
        if results:
            logger.info(f"💰 DEFERRED_FUNDING: {len(results)} deposit(s) attempted")
        return results
