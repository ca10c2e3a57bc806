"""
Payment parsing, signature and sanitization tests
"""

import pytest

from services.payment_service import (
    InvalidPaymentEvent, compute_signature, parse_razorpay_event, parse_upi_event, rupees_to_paise, verify_signature
)
from utils.data_sanitizer import mask_phone, safe_failure_reason, sanitize_for_log


class TestAmounts:

    @pytest.mark.parametrize("amount,expected", [("100", 10000), (250.75, 25075), ("99.999", 9999), (1, 100)])
    def test_rupees_to_paise_floors(self, amount, expected):
        assert rupees_to_paise(amount) == expected

    @pytest.mark.parametrize("amount", ["0", "-1", "abc", "0.001", "Infinity"])
    def test_invalid_amounts(self, amount):
        with pytest.raises(InvalidPaymentEvent):
            rupees_to_paise(amount)


class TestSignatures:

    def test_round_trip(self):
        body = b'{"event":"payment.captured"}'
        assert verify_signature("secret", body, compute_signature("secret", body))

    def test_tampered_body_or_missing_parts(self):
        signature = compute_signature("secret", b"original")
        assert not verify_signature("secret", b"tampered", signature)
        assert not verify_signature(None, b"original", signature)
        assert not verify_signature("secret", b"original", None)


class TestEventParsing:

    def test_upi_success(self):
        event = parse_upi_event({"user_phone": "+919876543210", "amount": "500", "transaction_id": "T1", "status": "SUCCESS"})
        assert event.provider == "upi"
        assert event.succeeded is True
        assert event.amount_paise == 50000
        assert event.event_type == "payment.success"

    def test_upi_missing_fields(self):
        with pytest.raises(InvalidPaymentEvent) as excinfo:
            parse_upi_event({"user_phone": "+919876543210"})
        assert "transaction_id" in str(excinfo.value)

    def test_razorpay_failed_payment(self):
        event = parse_razorpay_event({
            "event": "payment.failed",
            "payload": {"payment": {"entity": {"id": "pay_F", "amount": 20000, "notes": {"userId": "5"}}}},
        })
        assert event.succeeded is False
        assert event.user_ref == "5"
        assert event.order_id is None

    def test_razorpay_other_event(self):
        assert parse_razorpay_event({"event": "refund.processed"}) is None

    @pytest.mark.parametrize("amount", ["fifty", 0, -20000, 100.5, "NaN", True])
    def test_razorpay_amount_must_be_positive_whole_paise(self, amount):
        with pytest.raises(InvalidPaymentEvent):
            parse_razorpay_event({
                "event": "payment.captured",
                "payload": {"payment": {"entity": {"id": "pay_A", "amount": amount, "notes": {"userId": "5"}}}},
            })

    def test_razorpay_numeric_string_amount(self):
        event = parse_razorpay_event({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_B", "amount": "20000", "notes": {"userId": "5"}}}},
        })
        assert event.amount_paise == 20000


class TestSanitization:

    def test_phone_masked(self):
        assert mask_phone("+919876543210") == "*********3210"
        assert mask_phone(None) == "<none>"

    def test_sensitive_fields_redacted_in_logs(self):
        logged = sanitize_for_log({"user_phone": "+919876543210", "amount": "500"})
        assert "9876543210" not in logged
        assert '"amount": "500"' in logged

    def test_failure_reason_is_bounded(self):
        reason = safe_failure_reason("chain_rejected", "Move abort " + "x" * 300)
        assert reason.startswith("The investment transaction was rejected on-chain.")
        assert reason.endswith("...)")
        assert len(reason) < 200

    def test_unknown_category_falls_back(self):
        assert "internal error" in safe_failure_reason("no_such_category")
