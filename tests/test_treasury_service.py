"""
Treasury funding tests
Deposit conversion, deferral until the vault exists, retries and hash reconciliation
"""

import asyncio

import pytest
import pytest_asyncio

from models import Transaction, TransactionStatus, TransactionType, User
from services.chain_service import ChainUnavailableError, ConfirmationOutcome
from services.treasury_service import MAX_FUNDING_ATTEMPTS, TreasuryService
from tests.factories import T0, chain_hash, fetch, vault_for

EXPECTED_STABLE_UNITS = 1176470


@pytest.fixture
def treasury(session_factory, oracle, chain, clock):
    return TreasuryService(session_factory, oracle, chain, treasury_signer=object(), clock=clock, confirmation_timeout=5)


@pytest.fixture
def create_deposit(session_factory):
    async def _create(user: User, amount_paise: int = 10000, external_id: str = None) -> Transaction:
        async with session_factory() as session:
            tx = Transaction(
                user_id=user.id,
                type=TransactionType.DEPOSIT.value,
                status=TransactionStatus.PENDING.value,
                amount_in=amount_paise,
                asset_in="INR",
                asset_out="USDC",
                external_id=external_id,
            )
            session.add(tx)
            await session.commit()
            return tx
    return _create


@pytest_asyncio.fixture
async def funded_user(create_user):
    return await create_user(vault_address=vault_for(77))


class TestFundDeposit:

    @pytest.mark.asyncio
    async def test_deferred_without_vault(self, treasury, create_user, create_deposit, chain, session_factory):
        user = await create_user(vault_address=None)
        deposit = await create_deposit(user)

        result = await treasury.fund_deposit(deposit.id)

        assert result.status == "deferred"
        assert chain.submitted == []
        assert (await fetch(session_factory, Transaction, deposit.id)).status == TransactionStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_funds_user_vault(self, treasury, funded_user, create_deposit, chain, session_factory):
        deposit = await create_deposit(funded_user)

        result = await treasury.fund_deposit(deposit.id)

        assert result.status == "funded"
        assert result.stable_units == EXPECTED_STABLE_UNITS
        assert chain.submitted[0].arguments == [("address", vault_for(77)), ("u64", EXPECTED_STABLE_UNITS)]

        stored = await fetch(session_factory, Transaction, deposit.id)
        assert stored.status == TransactionStatus.SUCCESS.value
        assert stored.tx_hash == chain_hash(1)
        assert stored.amount_out == EXPECTED_STABLE_UNITS
        assert stored.completed_at == T0
        assert stored.block_version == "5001"

    @pytest.mark.asyncio
    async def test_non_pending_deposit_skipped(self, treasury, funded_user, create_deposit, chain):
        deposit = await create_deposit(funded_user)
        await treasury.fund_deposit(deposit.id)

        again = await treasury.fund_deposit(deposit.id)

        assert again.status == "skipped"
        assert len(chain.submitted) == 1

    @pytest.mark.asyncio
    async def test_unknown_deposit(self, treasury):
        with pytest.raises(ValueError):
            await treasury.fund_deposit(12345)


class TestFundingFailures:

    @pytest.mark.asyncio
    async def test_oracle_failure_retries_then_fails(self, treasury, funded_user, create_deposit, oracle, oracle_down, chain, session_factory):
        oracle.error = oracle_down
        deposit = await create_deposit(funded_user)

        first = await treasury.fund_deposit(deposit.id)
        stored = await fetch(session_factory, Transaction, deposit.id)
        assert first.status == "retry"
        assert stored.status == TransactionStatus.PENDING.value
        assert stored.retry_count == 1
        assert stored.completed_at is None

        for _ in range(MAX_FUNDING_ATTEMPTS - 1):
            last = await treasury.fund_deposit(deposit.id)
        stored = await fetch(session_factory, Transaction, deposit.id)
        assert last.status == "failed"
        assert stored.status == TransactionStatus.FAILED.value
        assert stored.completed_at == T0
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_vm_rejection_clears_hash_for_retry(self, treasury, funded_user, create_deposit, chain, session_factory):
        chain.outcomes[chain_hash(1)] = ConfirmationOutcome(success=False, tx_hash=chain_hash(1), vm_status="Move abort: E_PAUSED")
        deposit = await create_deposit(funded_user)

        result = await treasury.fund_deposit(deposit.id)

        stored = await fetch(session_factory, Transaction, deposit.id)
        assert result.status == "retry"
        assert result.tx_hash == chain_hash(1)
        assert stored.tx_hash is None
        assert stored.status == TransactionStatus.PENDING.value
        assert "E_PAUSED" in stored.error_message

    @pytest.mark.asyncio
    async def test_unconfirmed_submission_stays_processing(self, treasury, funded_user, create_deposit, chain, session_factory):
        chain.confirm_error = ChainUnavailableError("node timeout")
        deposit = await create_deposit(funded_user)

        result = await treasury.fund_deposit(deposit.id)

        stored = await fetch(session_factory, Transaction, deposit.id)
        assert result.status == "awaiting_confirmation"
        assert stored.status == TransactionStatus.PROCESSING.value
        assert stored.tx_hash == chain_hash(1)
        assert stored.submitted_at == T0


class TestSingleSubmitter:
    """Only the worker holding the processing claim may submit or release a deposit"""

    @pytest.mark.asyncio
    async def test_concurrent_workers_submit_once(self, treasury, funded_user, create_deposit, oracle, chain, session_factory):
        oracle.delay = 0.05
        deposit = await create_deposit(funded_user)

        results = await asyncio.gather(treasury.fund_deposit(deposit.id), treasury.fund_deposit(deposit.id))

        assert sorted(r.status for r in results) == ["funded", "skipped"]
        assert len(chain.submitted) == 1
        assert (await fetch(session_factory, Transaction, deposit.id)).status == TransactionStatus.SUCCESS.value

    @pytest.mark.asyncio
    async def test_failing_worker_leaves_anothers_claim_alone(
        self, treasury, funded_user, create_deposit, oracle, oracle_down, chain, session_factory
    ):
        oracle.error = oracle_down
        deposit = await create_deposit(funded_user)
        # Another worker is mid-submission
        assert await treasury._claim(deposit.id) is True

        result = await treasury.fund_deposit(deposit.id)

        assert result.status == "skipped"
        assert oracle.fiat_calls == 0
        stored = await fetch(session_factory, Transaction, deposit.id)
        assert stored.status == TransactionStatus.PROCESSING.value
        assert stored.retry_count == 0

    @pytest.mark.asyncio
    async def test_release_requires_processing_claim(self, treasury, funded_user, create_deposit, session_factory):
        deposit = await create_deposit(funded_user)

        assert await treasury._release_for_retry(deposit.id, "late failure") == "skipped"

        stored = await fetch(session_factory, Transaction, deposit.id)
        assert stored.status == TransactionStatus.PENDING.value
        assert stored.retry_count == 0
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_oracle_failure_after_claim_returns_deposit_to_pending(
        self, treasury, funded_user, create_deposit, oracle, oracle_down, session_factory
    ):
        oracle.error = oracle_down
        deposit = await create_deposit(funded_user)

        result = await treasury.fund_deposit(deposit.id)

        assert result.status == "retry"
        assert oracle.fiat_calls == 1
        assert (await fetch(session_factory, Transaction, deposit.id)).status == TransactionStatus.PENDING.value


class TestUnexpectedChainErrors:
    """Raw adapter errors must never strand a claimed deposit"""

    @pytest.mark.asyncio
    async def test_transport_error_before_send_is_retried(self, treasury, funded_user, create_deposit, chain, session_factory):
        chain.submit_error = ConnectionResetError("connection reset by peer")
        deposit = await create_deposit(funded_user)

        result = await treasury.fund_deposit(deposit.id)

        stored = await fetch(session_factory, Transaction, deposit.id)
        assert result.status == "retry"
        assert result.reason == "internal_error"
        assert stored.status == TransactionStatus.PENDING.value
        assert stored.tx_hash is None
        assert stored.retry_count == 1

        chain.submit_error = None
        results = await treasury.fund_deferred_deposits()

        assert [r.status for r in results] == ["funded"]
        assert len(chain.submitted) == 1

    @pytest.mark.asyncio
    async def test_unsent_transaction_is_retried(self, treasury, funded_user, create_deposit, chain, session_factory):
        chain.submit_error = ChainUnavailableError("Failed to build transaction: ConnectError")
        deposit = await create_deposit(funded_user)

        result = await treasury.fund_deposit(deposit.id)

        assert result.status == "retry"
        assert result.reason == "submit_failed"
        assert (await fetch(session_factory, Transaction, deposit.id)).status == TransactionStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_error_after_send_waits_for_reconciliation(self, treasury, funded_user, create_deposit, chain, session_factory):
        chain.confirm_error = RuntimeError("response decoding failed")
        deposit = await create_deposit(funded_user)

        result = await treasury.fund_deposit(deposit.id)

        stored = await fetch(session_factory, Transaction, deposit.id)
        assert result.status == "awaiting_confirmation"
        assert stored.status == TransactionStatus.PROCESSING.value
        assert stored.tx_hash == chain_hash(1)
        assert await treasury.fund_deferred_deposits() == []

        chain.lookups[chain_hash(1)] = ConfirmationOutcome(success=True, tx_hash=chain_hash(1), version="9001")
        assert [r.status for r in await treasury.reconcile_processing_deposits()] == ["funded"]
        assert len(chain.submitted) == 1


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_processing_deposit_resolved_by_lookup(self, treasury, funded_user, create_deposit, chain, session_factory):
        chain.confirm_error = ChainUnavailableError("node timeout")
        deposit = await create_deposit(funded_user)
        await treasury.fund_deposit(deposit.id)

        # Still unknown to the node: nothing happens
        assert await treasury.reconcile_processing_deposits() == []

        chain.lookups[chain_hash(1)] = ConfirmationOutcome(success=True, tx_hash=chain_hash(1), version="7777")
        results = await treasury.reconcile_processing_deposits()

        assert [r.status for r in results] == ["funded"]
        stored = await fetch(session_factory, Transaction, deposit.id)
        assert stored.status == TransactionStatus.SUCCESS.value
        assert stored.block_version == "7777"

    @pytest.mark.asyncio
    async def test_reconcile_by_hash(self, treasury, funded_user, create_deposit, chain, session_factory):
        chain.confirm_error = ChainUnavailableError("node timeout")
        deposit = await create_deposit(funded_user)
        await treasury.fund_deposit(deposit.id)

        assert await treasury.reconcile_by_hash("0xnot-ours") is None
        result = await treasury.reconcile_by_hash(chain_hash(1), version="8888")

        assert result.status == "funded"
        assert (await fetch(session_factory, Transaction, deposit.id)).block_version == "8888"


class TestDeferredFunding:

    @pytest.mark.asyncio
    async def test_funds_after_vault_provisioning(self, treasury, create_user, create_deposit, chain, session_factory):
        user = await create_user(vault_address=None)
        first = await create_deposit(user, external_id="pay_1")
        second = await create_deposit(user, amount_paise=20000, external_id="pay_2")

        assert await treasury.fund_deferred_deposits() == []

        async with session_factory() as session:
            stored_user = await session.get(User, user.id)
            stored_user.vault_address = vault_for(78)
            await session.commit()

        results = await treasury.fund_deferred_deposits(user_id=user.id)

        assert [(r.transaction_id, r.status) for r in results] == [(first.id, "funded"), (second.id, "funded")]
        assert [p.arguments[1][1] for p in chain.submitted] == [EXPECTED_STABLE_UNITS, 2352941]
