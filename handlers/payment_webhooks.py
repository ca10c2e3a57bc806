"""
Payment Webhook Handlers

Direct flow: Gateway Confirmation -> Deposit Recorded -> Vault Funding

Both gateways are idempotent on the gateway's transaction id. Captured
payments are recorded as pending deposits and handed to the treasury in the
background; the deposit funding job picks up anything that does not finish.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request

from config import Config
from services.payment_idempotency_service import PaymentRecordResult, UnknownPayerError
from services.payment_service import (
    InvalidPaymentEvent, PaymentEvent, PaymentService, parse_razorpay_event, parse_upi_event, verify_signature
)
from utils.data_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["payments"])


def get_services(request: Request):
    return request.app.state.services


async def _read_json(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty request body")
    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON format")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return payload


async def fund_captured_deposit(services, transaction_id: int) -> None:
    """Background step after a capture: fund the vault, then archive the deposit receipt"""
    try:
        result = await services.treasury.fund_deposit(transaction_id)
        logger.info(f"💰 DEPOSIT_FUNDING: tx {transaction_id} -> {result.status}")
    except Exception as e:
        logger.error(f"❌ DEPOSIT_FUNDING_ERROR: tx {transaction_id}: {e}", exc_info=True)
    try:
        await services.receipts.archive_deposit_receipt(transaction_id)
    except Exception as e:
        logger.warning(f"⚠️ DEPOSIT_RECEIPT_DEFERRED: tx {transaction_id}: {e}")


async def _record(services, event: PaymentEvent, background_tasks: BackgroundTasks) -> PaymentRecordResult:
    try:
        result = await services.payments.record_payment_event(event)
    except UnknownPayerError as e:
        logger.warning(f"⚠️ PAYMENT_UNKNOWN_USER: {e}")
        raise HTTPException(status_code=404, detail="User not found")

    if result.status == "recorded" and result.succeeded:
        background_tasks.add_task(fund_captured_deposit, services, result.transaction_id)
    return result


@router.post("/upi")
async def upi_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
):
    """
    UPI payment confirmation.

    Body: {user_phone, amount (INR), transaction_id, status: success|failed}
    """
    services = get_services(request)
    if Config.UPI_WEBHOOK_SECRET:
        raw = await request.body()
        if not verify_signature(Config.UPI_WEBHOOK_SECRET, raw, signature):
            logger.critical("🚨 UPI_SECURITY: webhook signature verification failed")
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

    payload = await _read_json(request)
    logger.info(f"📥 UPI_WEBHOOK: {sanitize_for_log(payload)}")

    try:
        event = parse_upi_event(payload)
    except InvalidPaymentEvent as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        result = await _record(services, event, background_tasks)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ UPI_WEBHOOK: unexpected error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "status": "processed" if result.status == "recorded" else "duplicate",
        "transaction_id": result.transaction_id,
    }


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
):
    """payment.captured and payment.failed; any other event is acknowledged and ignored"""
    services = get_services(request)
    raw = await request.body()
    if not PaymentService.verify_webhook_signature(raw, signature):
        logger.critical("🚨 RAZORPAY_SECURITY: webhook signature verification failed")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    payload = await _read_json(request)
    try:
        event = parse_razorpay_event(payload)
    except InvalidPaymentEvent as e:
        raise HTTPException(status_code=400, detail=str(e))

    if event is None:
        logger.info(f"ℹ️ RAZORPAY_WEBHOOK: ignoring event {payload.get('event')}")
        return {"status": "ignored"}

    try:
        result = await _record(services, event, background_tasks)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ RAZORPAY_WEBHOOK: unexpected error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "status": "processed" if result.status == "recorded" else "duplicate",
        "transaction_id": result.transaction_id,
    }
