"""
Payment gateway adapter (Razorpay UPI orders) and webhook authenticity checks.

Amounts at this boundary are in paise (INR minor units).
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.api_adapter_retry import APIAdapter, ExternalAPIError

logger = logging.getLogger(__name__)


class PaymentGatewayError(ExternalAPIError):
    pass


class InvalidPaymentEvent(ValueError):
    """Webhook payload is missing or has malformed fields"""
    pass


@dataclass(frozen=True)
class PaymentOrder:
    order_id: str
    amount_paise: int
    currency: str


@dataclass(frozen=True)
class PaymentEvent:
    """Normalized capture/failure event from any gateway"""
    provider: str
    external_id: str
    event_type: str
    succeeded: bool
    amount_paise: int
    user_ref: str
    order_id: Optional[str] = None


def rupees_to_paise(amount: Any) -> int:
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise InvalidPaymentEvent(f"Invalid amount: {amount!r}") from e
    paise = int((value * 100).to_integral_value(rounding=ROUND_DOWN)) if value.is_finite() else 0
    if paise <= 0:
        raise InvalidPaymentEvent(f"Amount must be at least one paisa: {amount!r}")
    return paise


def parse_paise(amount: Any) -> int:
    """Gateway amounts already in paise: a positive whole number"""
    if isinstance(amount, bool):
        raise InvalidPaymentEvent(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise InvalidPaymentEvent(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value != value.to_integral_value() or value <= 0:
        raise InvalidPaymentEvent(f"Amount must be a positive whole number of paise: {amount!r}")
    return int(value)


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw request body, hex encoded"""
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, body), signature.strip())


def parse_upi_event(payload: Dict[str, Any]) -> PaymentEvent:
    """{user_phone, amount (rupees), transaction_id, status: success|failed}"""
    missing = [name for name in ("user_phone", "amount", "transaction_id", "status") if not payload.get(name)]
    if missing:
        raise InvalidPaymentEvent(f"Missing required fields: {', '.join(missing)}")

    status = str(payload["status"]).lower()
    if status not in ("success", "failed"):
        raise InvalidPaymentEvent(f"Unknown status: {status}")

    return PaymentEvent(
        provider="upi",
        external_id=str(payload["transaction_id"]),
        event_type=f"payment.{status}",
        succeeded=status == "success",
        amount_paise=rupees_to_paise(payload["amount"]),
        user_ref=str(payload["user_phone"]),
    )


def parse_razorpay_event(payload: Dict[str, Any]) -> Optional[PaymentEvent]:
    """
    payment.captured / payment.failed events. Other event types return None.

    The payment entity carries amount in paise and notes.userId set when the
    order was created.
    """
    event_type = payload.get("event")
    if event_type not in ("payment.captured", "payment.failed"):
        return None

    entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    payment_id = entity.get("id")
    user_ref = (entity.get("notes") or {}).get("userId")
    amount = entity.get("amount")
    if not payment_id or not user_ref or amount is None:
        raise InvalidPaymentEvent("Razorpay payment entity missing id, amount or notes.userId")

    return PaymentEvent(
        provider="razorpay",
        external_id=str(payment_id),
        event_type=event_type,
        succeeded=event_type == "payment.captured",
        amount_paise=parse_paise(amount),
        user_ref=str(user_ref),
        order_id=entity.get("order_id"),
    )


class PaymentService(APIAdapter):
    """Razorpay orders API"""

    error_class = PaymentGatewayError

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(service_name="razorpay", timeout=20, session=session)
        self.base_url = Config.RAZORPAY_API_URL.rstrip("/")

    def _auth_header(self) -> Dict[str, str]:
        if not (Config.RAZORPAY_KEY_ID and Config.RAZORPAY_KEY_SECRET):
            raise PaymentGatewayError(self.service_name, "Razorpay credentials not configured", retryable=False)
        return {"Authorization": aiohttp.BasicAuth(Config.RAZORPAY_KEY_ID, Config.RAZORPAY_KEY_SECRET).encode()}

    async def create_order(self, amount_paise: int, user_id: int, purpose: str = "wallet_deposit") -> PaymentOrder:
        """Create a UPI payment intent; the capture arrives later via webhook"""
        if amount_paise < Config.MIN_PLAN_AMOUNT_PAISE:
            raise PaymentGatewayError(self.service_name, f"Amount below minimum ({amount_paise} paise)", retryable=False)

        body = {
            "amount": amount_paise,
            "currency": "INR",
            "receipt": f"receipt_{user_id}_{int(time.time() * 1000)}",
            "notes": {"userId": str(user_id), "purpose": purpose},
        }
        data = await self._make_http_request("POST", f"{self.base_url}/orders", headers=self._auth_header(), json=body)
        order = PaymentOrder(order_id=data["id"], amount_paise=int(data["amount"]), currency=data.get("currency", "INR"))
        logger.info(f"🧾 PAYMENT_ORDER_CREATED: {order.order_id} user={user_id} amount={amount_paise}")
        return order

    @staticmethod
    def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
        return verify_signature(Config.RAZORPAY_WEBHOOK_SECRET, body, signature)
