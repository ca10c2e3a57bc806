"""
Indexer Webhook Handler
Pushed chain events, applied through the same path as the hourly indexer sync.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request

from config import Config
from services.indexer_service import STREAM_QUERIES, parse_chain_event
from services.payment_service import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["indexer"])


@router.post("/indexer")
async def indexer_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
):
    """Body: {events: [{stream, vault_address, vault_index, transaction_version, transaction_hash, ...}]}"""
    raw = await request.body()
    if Config.INDEXER_WEBHOOK_SECRET and not verify_signature(Config.INDEXER_WEBHOOK_SECRET, raw, signature):
        logger.critical("🚨 INDEXER_SECURITY: webhook signature verification failed")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(raw or b"{}")
        raw_events = payload.get("events")
        if not isinstance(raw_events, list):
            raise ValueError("events must be a list")
        events = []
        for item in raw_events:
            stream = item.get("stream")
            if stream not in STREAM_QUERIES:
                raise ValueError(f"unknown stream {stream!r}")
            events.append(parse_chain_event(stream, item))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid indexer payload: {e}")

    try:
        summary = await request.app.state.services.indexer_sync.apply_events(events)
    except Exception as e:
        logger.error(f"❌ INDEXER_WEBHOOK: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(f"📡 INDEXER_WEBHOOK: applied {len(events)} event(s): {summary}")
    return {"status": "processed", "results": summary}
