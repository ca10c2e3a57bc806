"""
Test doubles for the oracle and chain adapters, plus ledger lookup helpers
"""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select

from models import AuditLog, Transaction
from services.chain_service import ConfirmationOutcome, SubmitResult, build_execute_sip_payload
from services.oracle_service import FiatRate

T0 = datetime(2026, 3, 2, 9, 0, 0)
DAY = timedelta(days=1)


def vault_for(n: int) -> str:
    return "0xa" + f"{n:063x}"


def chain_hash(n: int) -> str:
    """Hash FakeChain assigns to its nth accepted submission"""
    return "0x" + f"{n:064x}"


class FakeOracle:
    """INR 85 per USDC and 0.1 APT per USDC unless told otherwise"""

    def __init__(self, fiat_rate: Decimal = Decimal("85"), asset_rates: Optional[Dict[str, Decimal]] = None):
        self.fiat_rate = fiat_rate
        self.asset_rates = asset_rates or {"APT": Decimal("0.1"), "USDC": Decimal("1")}
        self.error: Optional[Exception] = None
        self.delay: float = 0
        self.fiat_calls = 0

    async def get_fiat_rate(self) -> FiatRate:
        self.fiat_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FiatRate(rate=self.fiat_rate, timestamp=T0)

    async def get_asset_rate(self, from_asset: str, to_asset: str) -> Decimal:
        if self.error is not None:
            raise self.error
        return self.asset_rates[to_asset.upper()]


class FakeChain:
    """
    Records submitted payloads and confirms them successfully by default.

    raise_for_vaults: vault addresses whose submission raises RuntimeError
    submit_error / confirm_error: raised on every submit / confirmation
    on_confirm: awaited with the hash at the start of every confirmation wait
    lookups: hash -> outcome returned by lookup_transaction
    """

    def __init__(self):
        self.submitted: List = []
        self.raise_for_vaults = set()
        self.submit_error: Optional[Exception] = None
        self.submit_result: Optional[SubmitResult] = None
        self.confirm_error: Optional[Exception] = None
        self.confirm_delay: float = 0
        self.on_confirm: Optional[Callable[[str], Awaitable[None]]] = None
        self.outcomes: Dict[str, ConfirmationOutcome] = {}
        self.lookups: Dict[str, Optional[ConfirmationOutcome]] = {}
        self.fill = None

    def build_execution_payload(self, vault_address, vault_index, amount_in, min_amount_out):
        return build_execute_sip_payload(vault_address, vault_index or 0, amount_in, min_amount_out)

    async def submit(self, payload, signer) -> SubmitResult:
        vault_address = payload.arguments[0][1]
        if vault_address in self.raise_for_vaults:
            raise RuntimeError(f"node exploded for {vault_address}")
        if self.submit_error is not None:
            raise self.submit_error
        if self.submit_result is not None:
            return self.submit_result
        self.submitted.append(payload)
        tx_hash = chain_hash(len(self.submitted))
        self.outcomes.setdefault(
            tx_hash, ConfirmationOutcome(success=True, tx_hash=tx_hash, version=str(5000 + len(self.submitted)))
        )
        return SubmitResult(success=True, hash=tx_hash)

    async def lookup_transaction(self, tx_hash: str) -> Optional[ConfirmationOutcome]:
        return self.lookups.get(tx_hash)

    async def wait_for_confirmation(self, tx_hash: str, timeout: float = 60) -> ConfirmationOutcome:
        if self.on_confirm is not None:
            await self.on_confirm(tx_hash)
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if self.confirm_error is not None:
            raise self.confirm_error
        return self.outcomes[tx_hash]

    async def wait_for_fill(self, account, order_id, timeout=30, poll_interval=2):
        return self.fill

    async def close(self) -> None:
        pass


async def fetch(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


async def plan_transactions(session_factory, plan_id: int):
    async with session_factory() as session:
        result = await session.execute(
            select(Transaction).where(Transaction.plan_id == plan_id).order_by(Transaction.id)
        )
        return list(result.scalars())


async def audit_entries(session_factory, action: str):
    async with session_factory() as session:
        result = await session.execute(select(AuditLog).where(AuditLog.action == action).order_by(AuditLog.id))
        return list(result.scalars())
