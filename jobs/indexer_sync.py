"""
Indexer Sync
Reconciles ledger state against chain events reported by the vault indexer,
either polled hourly from the stored cursor or pushed through the webhook.

Events are keyed by stream, vault address, vault index and transaction
version; each is applied at most once through the webhook event ledger.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import IndexerCursor, Plan, Transaction, WebhookEventLedger
from services.audit_logger import AuditAction, record_audit
from services.indexer_service import STREAM_QUERIES, ChainEvent, IndexerService
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

INDEXER_PROVIDER = "indexer"
SYNC_PAGE_SIZE = 100


def event_key(event: ChainEvent) -> str:
    index = "" if event.vault_index is None else event.vault_index
    return f"{event.stream}:{event.vault_address}:{index}:{event.transaction_version}"


class IndexerSyncJob:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine,
        treasury=None,
        indexer: Optional[IndexerService] = None,
        clock: Clock = system_clock,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.treasury = treasury
        self.indexer = indexer or IndexerService()
        self.clock = clock

    async def _claim_event(self, event: ChainEvent) -> bool:
        """Insert the ledger row; False when the event was already applied"""
        now = self.clock.now()
        async with self.session_factory() as session:
            session.add(
                WebhookEventLedger(
                    event_provider=INDEXER_PROVIDER,
                    event_id=event_key(event),
                    event_type=event.stream,
                    status="processing",
                    payload={k: v for k, v in event.data.items() if isinstance(v, (str, int, float, bool, type(None)))},
                    created_at=now,
                )
            )
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def _release_event(self, event: ChainEvent) -> None:
        """Drop the claim so a later sync can apply the event again"""
        async with self.session_factory() as session:
            await session.execute(
                delete(WebhookEventLedger).where(
                    WebhookEventLedger.event_provider == INDEXER_PROVIDER,
                    WebhookEventLedger.event_id == event_key(event),
                )
            )
            await session.commit()

    async def _complete_event(self, event: ChainEvent, result: str, transaction_id: Optional[int] = None) -> None:
        async with self.session_factory() as session:
            ledger = (
                await session.execute(
                    select(WebhookEventLedger).where(
                        WebhookEventLedger.event_provider == INDEXER_PROVIDER,
                        WebhookEventLedger.event_id == event_key(event),
                    )
                )
            ).scalar_one()
            ledger.status = "completed"
            ledger.processing_result = result
            ledger.transaction_id = transaction_id
            ledger.completed_at = self.clock.now()
            await session.commit()

    async def apply_event(self, event: ChainEvent) -> str:
        """Apply one chain event; returns duplicate, settled, funded, known, unknown or ignored"""
        if not await self._claim_event(event):
            return "duplicate"
        try:
            if event.stream == "sip_executed":
                result, tx_id = await self._apply_execution(event)
            elif event.stream == "deposit":
                result, tx_id = await self._apply_deposit(event)
            else:
                result, tx_id = "ignored", None
        except Exception as e:
            logger.error(f"❌ INDEXER_EVENT_FAILED: {event_key(event)}: {e}", exc_info=True)
            await self._release_event(event)
            raise
        await self._complete_event(event, result, tx_id)
        return result

    async def _known_transaction(self, tx_hash: Optional[str]) -> Optional[Transaction]:
        if not tx_hash:
            return None
        async with self.session_factory() as session:
            return (
                await session.execute(select(Transaction).where(Transaction.tx_hash == tx_hash))
            ).scalar_one_or_none()

    async def _apply_execution(self, event: ChainEvent):
        if event.transaction_hash:
            outcome = await self.engine.reconcile_by_hash(event.transaction_hash, str(event.transaction_version))
            if outcome is not None:
                logger.info(f"🔗 INDEXER_SETTLED: tx {outcome.transaction_id} from version {event.transaction_version}")
                return "settled", outcome.transaction_id

        known = await self._known_transaction(event.transaction_hash)
        if known is not None:
            return "known", known.id

        # Executed on-chain but absent from the ledger
        async with self.session_factory() as session:
            query = select(Plan).where(Plan.vault_address == event.vault_address)
            if event.vault_index is not None:
                query = query.where(Plan.vault_index == event.vault_index)
            plan = (await session.execute(query.limit(1))).scalar_one_or_none()
            record_audit(
                session, AuditAction.UNKNOWN_CHAIN_EXECUTION, "plan", plan.id if plan else None,
                plan.user_id if plan else None,
                {
                    "vault_address": event.vault_address,
                    "vault_index": event.vault_index,
                    "transaction_version": event.transaction_version,
                    "transaction_hash": event.transaction_hash,
                    "amount_in": event.amount_in,
                    "amount_out": event.amount_out,
                },
                self.clock.now(),
            )
            await session.commit()
        logger.warning(
            f"🚨 INDEXER_UNKNOWN_EXECUTION: vault {event.vault_address}#{event.vault_index} "
            f"version {event.transaction_version} hash={event.transaction_hash}"
        )
        return "unknown", None

    async def _apply_deposit(self, event: ChainEvent):
        if self.treasury is not None and event.transaction_hash:
            result = await self.treasury.reconcile_by_hash(event.transaction_hash, str(event.transaction_version))
            if result is not None:
                return "funded", result.transaction_id
        known = await self._known_transaction(event.transaction_hash)
        if known is not None:
            return "known", known.id
        logger.info(f"ℹ️ INDEXER_EXTERNAL_DEPOSIT: vault {event.vault_address} version {event.transaction_version}")
        return "unknown", None

    async def apply_events(self, events: List[ChainEvent]) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for event in events:
            result = await self.apply_event(event)
            summary[result] = summary.get(result, 0) + 1
        return summary

    async def _load_cursor(self, stream: str) -> int:
        async with self.session_factory() as session:
            cursor = (
                await session.execute(select(IndexerCursor).where(IndexerCursor.stream == stream))
            ).scalar_one_or_none()
            return cursor.last_version if cursor else 0

    async def _save_cursor(self, stream: str, version: int) -> None:
        async with self.session_factory() as session:
            cursor = (
                await session.execute(select(IndexerCursor).where(IndexerCursor.stream == stream))
            ).scalar_one_or_none()
            if cursor is None:
                session.add(IndexerCursor(stream=stream, last_version=version, updated_at=self.clock.now()))
            elif version > cursor.last_version:
                cursor.last_version = version
                cursor.updated_at = self.clock.now()
            await session.commit()

    async def sync_stream(self, stream: str) -> int:
        """Apply every event after the cursor, page by page; the cursor advances per page"""
        since = await self._load_cursor(stream)
        applied = 0
        while True:
            events = await self.indexer.fetch_events(stream, since, limit=SYNC_PAGE_SIZE)
            if not events:
                break
            await self.apply_events(events)
            applied += len(events)
            since = max(event.transaction_version for event in events)
            await self._save_cursor(stream, since)
            if len(events) < SYNC_PAGE_SIZE:
                break
        if applied:
            logger.info(f"📡 INDEXER_SYNC: {stream} applied {applied} event(s), cursor={since}")
        return applied

    async def run(self) -> Dict[str, int]:
        if not self.indexer.configured:
            logger.debug("INDEXER_SYNC skipped: no indexer configured")
            return {}
        results = {}
        for stream in STREAM_QUERIES:
            try:
                results[stream] = await self.sync_stream(stream)
            except Exception as e:
                logger.error(f"❌ INDEXER_SYNC_FAILED: {stream}: {e}", exc_info=True)
                results[stream] = -1
        return results
