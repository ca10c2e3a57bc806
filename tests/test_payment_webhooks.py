"""
Webhook endpoint tests
UPI and Razorpay capture handling, signature checks, replay safety and the indexer push endpoint
"""

import json
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from config import Config
from jobs.scheduler import ServiceRegistry
from models import Transaction, TransactionStatus, TransactionType
from services.payment_idempotency_service import PaymentIdempotencyService
from services.payment_service import compute_signature
from tests.factories import fetch
from webhook_server import create_app

RAZORPAY_SECRET = "rzp_webhook_test_secret"
UPI_SECRET = "upi_webhook_test_secret"


@pytest.fixture
def registry(session_factory, clock):
    treasury = AsyncMock()
    receipts = AsyncMock()
    indexer_sync = AsyncMock()
    indexer_sync.apply_events.return_value = {"settled": 1}
    return ServiceRegistry(
        session_factory=session_factory,
        oracle=Mock(),
        chain=AsyncMock(),
        rewards=Mock(),
        receipts=receipts,
        treasury=treasury,
        plans=Mock(),
        payments=PaymentIdempotencyService(session_factory, clock=clock),
        lock_service=Mock(),
        engine=AsyncMock(),
        indexer_sync=indexer_sync,
    )


@pytest_asyncio.fixture
async def client(registry):
    app = create_app(services=registry, start_scheduler=False)
    with patch.object(Config, "UPI_WEBHOOK_SECRET", None), \
            patch.object(Config, "INDEXER_WEBHOOK_SECRET", None), \
            patch.object(Config, "RAZORPAY_WEBHOOK_SECRET", RAZORPAY_SECRET):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
            yield http


def upi_body(phone: str, transaction_id: str = "upi_txn_001", status: str = "success", amount="250.75") -> dict:
    return {"user_phone": phone, "amount": amount, "transaction_id": transaction_id, "status": status}


def razorpay_body(user_id: int, event: str = "payment.captured", payment_id: str = "pay_N1x2y3") -> dict:
    return {
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "amount": 50000,
                    "order_id": "order_abc",
                    "notes": {"userId": str(user_id)},
                }
            }
        },
    }


class TestUPIWebhook:

    @pytest.mark.asyncio
    async def test_capture_recorded_and_funded(self, client, create_user, registry, session_factory):
        user = await create_user()
        response = await client.post("/webhooks/upi", json=upi_body(user.phone))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"

        deposit = await fetch(session_factory, Transaction, body["transaction_id"])
        assert deposit.type == TransactionType.DEPOSIT.value
        assert deposit.status == TransactionStatus.PENDING.value
        assert deposit.amount_in == 25075
        assert deposit.external_id == "upi_txn_001"

        registry.treasury.fund_deposit.assert_awaited_once_with(deposit.id)
        registry.receipts.archive_deposit_receipt.assert_awaited_once_with(deposit.id)

    @pytest.mark.asyncio
    async def test_replay_is_a_no_op(self, client, create_user, registry):
        user = await create_user()
        first = await client.post("/webhooks/upi", json=upi_body(user.phone))
        second = await client.post("/webhooks/upi", json=upi_body(user.phone))

        assert second.status_code == 200
        assert second.json() == {"status": "duplicate", "transaction_id": first.json()["transaction_id"]}
        registry.treasury.fund_deposit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_payment_recorded_without_funding(self, client, create_user, registry, session_factory):
        user = await create_user()
        response = await client.post("/webhooks/upi", json=upi_body(user.phone, status="failed"))

        deposit = await fetch(session_factory, Transaction, response.json()["transaction_id"])
        assert deposit.status == TransactionStatus.FAILED.value
        assert deposit.completed_at is not None
        registry.treasury.fund_deposit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_payer(self, client):
        response = await client.post("/webhooks/upi", json=upi_body("+910000000000"))
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_payloads(self, client, create_user):
        user = await create_user()
        bad_json = await client.post(
            "/webhooks/upi", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        missing = await client.post("/webhooks/upi", json={"user_phone": user.phone, "status": "success"})
        bad_status = await client.post("/webhooks/upi", json=upi_body(user.phone, status="refunded"))
        bad_amount = await client.post("/webhooks/upi", json=upi_body(user.phone, amount="-5"))

        assert bad_json.status_code == 400
        assert missing.status_code == 400
        assert "amount" in missing.json()["detail"]
        assert bad_status.status_code == 400
        assert bad_amount.status_code == 400

    @pytest.mark.asyncio
    async def test_signature_enforced_when_secret_configured(self, client, create_user):
        user = await create_user()
        raw = json.dumps(upi_body(user.phone, transaction_id="upi_signed")).encode()

        with patch.object(Config, "UPI_WEBHOOK_SECRET", UPI_SECRET):
            rejected = await client.post(
                "/webhooks/upi", content=raw,
                headers={"Content-Type": "application/json", "X-Webhook-Signature": "deadbeef"},
            )
            accepted = await client.post(
                "/webhooks/upi", content=raw,
                headers={"Content-Type": "application/json", "X-Webhook-Signature": compute_signature(UPI_SECRET, raw)},
            )

        assert rejected.status_code == 401
        assert accepted.status_code == 200


class TestRazorpayWebhook:

    @staticmethod
    def signed(body: dict):
        raw = json.dumps(body).encode()
        return raw, {"Content-Type": "application/json", "X-Razorpay-Signature": compute_signature(RAZORPAY_SECRET, raw)}

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client, create_user, registry):
        user = await create_user()
        raw = json.dumps(razorpay_body(user.id)).encode()
        response = await client.post(
            "/webhooks/razorpay", content=raw,
            headers={"Content-Type": "application/json", "X-Razorpay-Signature": "0" * 64},
        )

        assert response.status_code == 401
        registry.treasury.fund_deposit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_capture_processed(self, client, create_user, registry, session_factory):
        user = await create_user()
        raw, headers = self.signed(razorpay_body(user.id))
        response = await client.post("/webhooks/razorpay", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        deposit = await fetch(session_factory, Transaction, response.json()["transaction_id"])
        assert deposit.amount_in == 50000
        assert deposit.user_id == user.id
        registry.treasury.fund_deposit.assert_awaited_once_with(deposit.id)

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, client, create_user):
        user = await create_user()
        raw, headers = self.signed(razorpay_body(user.id, event="order.paid"))
        response = await client.post("/webhooks/razorpay", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_entity_without_user_reference(self, client):
        body = razorpay_body(1)
        del body["payload"]["payment"]["entity"]["notes"]
        raw, headers = self.signed(body)
        response = await client.post("/webhooks/razorpay", content=raw, headers=headers)
        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["fifty", 0, -500])
    async def test_unusable_amount_rejected_before_recording(self, client, create_user, registry, session_factory, amount):
        user = await create_user()
        body = razorpay_body(user.id)
        body["payload"]["payment"]["entity"]["amount"] = amount
        raw, headers = self.signed(body)

        response = await client.post("/webhooks/razorpay", content=raw, headers=headers)

        assert response.status_code == 400
        registry.treasury.fund_deposit.assert_not_awaited()
        async with session_factory() as session:
            assert (await session.execute(select(Transaction))).first() is None


class TestIndexerWebhook:

    @pytest.mark.asyncio
    async def test_events_applied(self, client, registry):
        payload = {
            "events": [
                {
                    "stream": "sip_executed",
                    "vault_address": "0xvault",
                    "vault_index": 0,
                    "transaction_version": 123,
                    "transaction_hash": "0xhash",
                    "amount_in": 1176470,
                    "amount_out": 11764700,
                }
            ]
        }
        response = await client.post("/webhooks/indexer", json=payload)

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "results": {"settled": 1}}
        (events,), _ = registry.indexer_sync.apply_events.await_args
        assert events[0].vault_index == 0
        assert events[0].transaction_version == 123
        assert events[0].amount_out == 11764700

    @pytest.mark.asyncio
    async def test_unknown_stream_rejected(self, client, registry):
        response = await client.post(
            "/webhooks/indexer", json={"events": [{"stream": "withdrawal", "transaction_version": 1}]}
        )
        assert response.status_code == 400
        registry.indexer_sync.apply_events.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_events_must_be_a_list(self, client):
        response = await client.post("/webhooks/indexer", json={"events": {"stream": "deposit"}})
        assert response.status_code == 400


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_reports_database(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] is True
