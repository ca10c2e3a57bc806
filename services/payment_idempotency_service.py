"""
Payment Idempotency Service
Records gateway capture/failure events exactly once per external transaction id
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    Transaction, TransactionStatus, TransactionType, User, WebhookEventLedger
)
from services.payment_service import PaymentEvent
from utils.clock import Clock, system_clock
from utils.data_sanitizer import mask_phone, safe_failure_reason

logger = logging.getLogger(__name__)


class UnknownPayerError(LookupError):
    """No user matches the payer reference in the event"""
    pass


@dataclass
class PaymentRecordResult:
    status: str  # recorded | duplicate
    transaction_id: Optional[int]
    user_id: Optional[int]
    succeeded: bool


async def resolve_payer(session: AsyncSession, event: PaymentEvent) -> User:
    """UPI events identify the payer by phone; Razorpay by our user id in notes"""
    if event.provider == "upi":
        user = (await session.execute(select(User).where(User.phone == event.user_ref))).scalar_one_or_none()
    else:
        try:
            user = await session.get(User, int(event.user_ref))
        except ValueError:
            user = None
    if user is None:
        ref = mask_phone(event.user_ref) if event.provider == "upi" else event.user_ref
        raise UnknownPayerError(f"No user for {event.provider} payer {ref}")
    return user


class PaymentIdempotencyService:
    """Centralized idempotent recording of payment webhooks"""

    def __init__(self, session_factory: async_sessionmaker, clock: Clock = system_clock):
        self.session_factory = session_factory
        self.clock = clock

    async def _find_existing(self, session: AsyncSession, event: PaymentEvent) -> Optional[PaymentRecordResult]:
        ledger = (
            await session.execute(
                select(WebhookEventLedger).where(
                    WebhookEventLedger.event_provider == event.provider,
                    WebhookEventLedger.event_id == event.external_id,
                )
            )
        ).scalar_one_or_none()
        if ledger is not None:
            return PaymentRecordResult("duplicate", ledger.transaction_id, ledger.user_id, event.succeeded)

        existing_tx = (
            await session.execute(select(Transaction).where(Transaction.external_id == event.external_id))
        ).scalar_one_or_none()
        if existing_tx is not None:
            return PaymentRecordResult("duplicate", existing_tx.id, existing_tx.user_id, event.succeeded)
        return None

    async def record_payment_event(self, event: PaymentEvent) -> PaymentRecordResult:
        """
        Record a deposit transaction for the event, or no-op on replay.

        Captured payments are recorded as pending deposits awaiting vault
        funding. Failed payments are recorded as failed deposits.
        """
        async with self.session_factory() as session:
            duplicate = await self._find_existing(session, event)
            if duplicate is not None:
                logger.info(f"🔁 PAYMENT_DUPLICATE: {event.provider}/{event.external_id} already recorded")
                return duplicate

            user = await resolve_payer(session, event)
            now = self.clock.now()

            if event.succeeded:
                tx = Transaction(
                    user_id=user.id,
                    type=TransactionType.DEPOSIT.value,
                    status=TransactionStatus.PENDING.value,
                    amount_in=event.amount_paise,
                    asset_in="INR",
                    asset_out="USDC",
                    external_id=event.external_id,
                    created_at=now,
                )
            else:
                tx = Transaction(
                    user_id=user.id,
                    type=TransactionType.DEPOSIT.value,
                    status=TransactionStatus.FAILED.value,
                    amount_in=event.amount_paise,
                    asset_in="INR",
                    external_id=event.external_id,
                    error_message=safe_failure_reason("payment_failed"),
                    created_at=now,
                    completed_at=now,
                )
            session.add(tx)
            await session.flush()

            session.add(
                WebhookEventLedger(
                    event_provider=event.provider,
                    event_id=event.external_id,
                    event_type=event.event_type,
                    status="completed",
                    user_id=user.id,
                    transaction_id=tx.id,
                    processing_result="deposit_recorded" if event.succeeded else "deposit_failed",
                    created_at=now,
                    completed_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent delivery of the same event won the insert
                await session.rollback()
                logger.warning(f"🔁 PAYMENT_RACE_DUPLICATE: {event.provider}/{event.external_id}")
                existing = await self._find_existing(session, event)
                return existing or PaymentRecordResult("duplicate", None, user.id, event.succeeded)

            logger.info(
                f"✅ PAYMENT_RECORDED: {event.provider}/{event.external_id} user={user.id} "
                f"amount={event.amount_paise} paise status={tx.status}"
            )
            return PaymentRecordResult("recorded", tx.id, user.id, event.succeeded)
