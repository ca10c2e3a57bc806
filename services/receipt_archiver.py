"""
Receipt Archiver
Renders receipts, stores them in Shelby blob storage and records a pointer row.

Blob names are deterministic per transaction (or per user and period for
reports), so archiving the same event twice returns the existing receipt.
"""

import logging
from calendar import monthrange
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import Plan, Receipt, ReceiptType, Transaction, TransactionStatus, TransactionType
from services.api_adapter_retry import APIAdapter, ExternalAPIError
from services.pdf_generator import ReceiptPDFGenerator
from services.retry_service import retry_async_decorator
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class ReceiptArchiveError(ExternalAPIError):
    pass


def _format_units(amount: Optional[int], decimals: int) -> str:
    if amount is None:
        return "-"
    return f"{Decimal(amount) / (Decimal(10) ** decimals):f}"


class BlobStorageClient(APIAdapter):
    """Shelby blob storage REST client"""

    error_class = ReceiptArchiveError

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(service_name="shelby", timeout=30, session=session)
        self.base_url = (Config.SHELBY_API_URL or "").rstrip("/")
        self.bucket = Config.SHELBY_BUCKET_NAME

    @property
    def configured(self) -> bool:
        return bool(self.base_url and Config.SHELBY_API_KEY)

    @retry_async_decorator("receipts")
    async def put_blob(self, blob_name: str, data: bytes, content_type: str) -> Dict[str, Any]:
        """Upload and return {blob_name, url}"""
        if not self.configured:
            raise ReceiptArchiveError(self.service_name, "Blob storage not configured", retryable=False)
        headers = {"Authorization": f"Bearer {Config.SHELBY_API_KEY}", "Content-Type": content_type}
        url = f"{self.base_url}/v1/blobs/{self.bucket}/{quote(blob_name)}"
        response = await self._make_http_request("PUT", url, headers=headers, data=data)
        return {"blob_name": blob_name, "url": (response or {}).get("url")}


class ReceiptArchiver:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        storage: Optional[BlobStorageClient] = None,
        renderer: Optional[ReceiptPDFGenerator] = None,
        clock: Clock = system_clock,
    ):
        self.session_factory = session_factory
        self.storage = storage or BlobStorageClient()
        self.renderer = renderer or ReceiptPDFGenerator()
        self.clock = clock

    async def _existing(self, blob_name: str) -> Optional[Receipt]:
        async with self.session_factory() as session:
            return (await session.execute(select(Receipt).where(Receipt.blob_name == blob_name))).scalar_one_or_none()

    async def _store(
        self,
        *,
        user_id: int,
        receipt_type: ReceiptType,
        blob_name: str,
        document: bytes,
        summary: Dict[str, Any],
        transaction_id: Optional[int] = None,
        plan_id: Optional[int] = None,
        period: Optional[str] = None,
    ) -> Receipt:
        existing = await self._existing(blob_name)
        if existing is not None:
            logger.info(f"🔁 RECEIPT_EXISTS: {blob_name}")
            return existing

        handle = await self.storage.put_blob(blob_name, document, PDF_CONTENT_TYPE)
        now = self.clock.now()
        receipt = Receipt(
            user_id=user_id,
            transaction_id=transaction_id,
            plan_id=plan_id,
            receipt_type=receipt_type.value,
            blob_name=handle["blob_name"],
            blob_url=handle.get("url"),
            content_type=PDF_CONTENT_TYPE,
            file_size=len(document),
            summary=summary,
            period=period,
            expires_at=now + timedelta(days=Config.RECEIPT_RETENTION_DAYS),
            created_at=now,
        )
        async with self.session_factory() as session:
            session.add(receipt)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._existing(blob_name)
                if existing is None:
                    raise
                return existing
        logger.info(f"🗄️ RECEIPT_ARCHIVED: {blob_name} ({len(document)} bytes)")
        return receipt

    async def archive_execution_receipt(self, transaction_id: int) -> Receipt:
        async with self.session_factory() as session:
            tx = await session.get(Transaction, transaction_id)
            if tx is None or tx.status != TransactionStatus.SUCCESS.value:
                raise ValueError(f"Transaction {transaction_id} is not a settled execution")
            plan = await session.get(Plan, tx.plan_id) if tx.plan_id else None

        summary = {
            "transaction_id": tx.id,
            "plan_id": tx.plan_id,
            "amount_in": tx.amount_in,
            "asset_in": tx.asset_in,
            "amount_out": tx.amount_out,
            "asset_out": tx.asset_out,
            "exchange_rate": str(tx.exchange_rate) if tx.exchange_rate is not None else None,
            "tx_hash": tx.tx_hash,
            "executed_at": tx.completed_at.isoformat() if tx.completed_at else None,
            "execution_number": plan.execution_count if plan else None,
        }
        document = self.renderer.render(
            "SIP Execution Receipt",
            {
                "Receipt for": f"Plan #{tx.plan_id}" + (f" ({plan.name})" if plan and plan.name else ""),
                "Invested": f"{_format_units(tx.amount_in, 2)} {tx.asset_in or ''}",
                "Received": f"{_format_units(tx.amount_out, 8 if tx.asset_out == 'APT' else 6)} {tx.asset_out or ''}",
                "Transaction hash": tx.tx_hash,
                "Executed at": summary["executed_at"],
                "Execution number": summary["execution_number"],
            },
            generated_at=self.clock.now(),
        )
        return await self._store(
            user_id=tx.user_id,
            receipt_type=ReceiptType.SIP_EXECUTION,
            blob_name=f"sip-receipts/{tx.user_id}/{tx.id}.pdf",
            document=document,
            summary=summary,
            transaction_id=tx.id,
            plan_id=tx.plan_id,
        )

    async def archive_deposit_receipt(self, transaction_id: int) -> Receipt:
        async with self.session_factory() as session:
            tx = await session.get(Transaction, transaction_id)
            if tx is None or tx.type != TransactionType.DEPOSIT.value:
                raise ValueError(f"Transaction {transaction_id} is not a deposit")

        summary = {
            "transaction_id": tx.id,
            "amount_in": tx.amount_in,
            "amount_out": tx.amount_out,
            "status": tx.status,
            "payment_reference": tx.external_id,
            "tx_hash": tx.tx_hash,
        }
        document = self.renderer.render(
            "Deposit Receipt",
            {
                "Amount paid": f"{_format_units(tx.amount_in, 2)} INR",
                "Credited": f"{_format_units(tx.amount_out, 6)} USDC" if tx.amount_out else "Pending vault funding",
                "Payment reference": tx.external_id,
                "Status": tx.status,
                "Transaction hash": tx.tx_hash,
            },
            generated_at=self.clock.now(),
        )
        return await self._store(
            user_id=tx.user_id,
            receipt_type=ReceiptType.DEPOSIT,
            blob_name=f"deposit-receipts/{tx.user_id}/{tx.id}.pdf",
            document=document,
            summary=summary,
            transaction_id=tx.id,
        )

    async def generate_monthly_report(self, user_id: int, period: str) -> Receipt:
        """Aggregate a user's transactions for period YYYY-MM into a report receipt"""
        try:
            start = datetime.strptime(period, "%Y-%m")
        except ValueError as e:
            raise ValueError(f"Invalid period {period!r}, expected YYYY-MM") from e
        end = start + timedelta(days=monthrange(start.year, start.month)[1])

        async with self.session_factory() as session:
            rows = list(
                (
                    await session.execute(
                        select(Transaction)
                        .where(
                            Transaction.user_id == user_id,
                            Transaction.created_at >= start,
                            Transaction.created_at < end,
                        )
                        .order_by(Transaction.created_at)
                    )
                ).scalars()
            )

        totals: Dict[str, Dict[str, int]] = {}
        for tx in rows:
            bucket = totals.setdefault(tx.type, {"count": 0, "successful": 0, "amount_in": 0})
            bucket["count"] += 1
            if tx.status == TransactionStatus.SUCCESS.value:
                bucket["successful"] += 1
                bucket["amount_in"] += tx.amount_in

        summary = {"period": period, "transaction_count": len(rows), "totals": totals}
        document = self.renderer.render(
            f"Monthly Report {period}",
            {
                "Period": period,
                "Transactions": len(rows),
                "Invested (INR)": _format_units(totals.get(TransactionType.SIP_EXECUTION.value, {}).get("amount_in", 0), 2),
                "Deposited (INR)": _format_units(totals.get(TransactionType.DEPOSIT.value, {}).get("amount_in", 0), 2),
            },
            line_items=[
                {
                    "date": tx.created_at.strftime("%Y-%m-%d") if tx.created_at else "",
                    "type": tx.type,
                    "amount": _format_units(tx.amount_in, 2),
                    "status": tx.status,
                }
                for tx in rows
            ],
            generated_at=self.clock.now(),
        )
        return await self._store(
            user_id=user_id,
            receipt_type=ReceiptType.MONTHLY_REPORT,
            blob_name=f"monthly-reports/{user_id}/{period}.pdf",
            document=document,
            summary=summary,
            period=period,
        )
