"""
Data sanitization for logs and user-facing messages.

Upstream error text (oracle bodies, node responses, gateway errors) can carry
keys, tokens and internal detail. Logs go through sanitize_for_log, and
anything stored in Transaction.error_message goes through safe_failure_reason.
"""

import re
import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class DataSanitizer:
    """Pattern and field based masking of sensitive values"""

    SENSITIVE_PATTERNS = {
        "api_key": re.compile(
            r'(?i)(api[_-]?key|apikey|x-api-key|secret[_-]?key)["\':=\s]*([a-zA-Z0-9_-]{16,})'
        ),
        "private_key": re.compile(
            r'(?i)(private[_-]?key|priv[_-]?key)["\':=\s]*((?:0x)?[a-fA-F0-9]{64})'
        ),
        "token": re.compile(r'(?i)(token|bearer)["\':=\s]*([a-zA-Z0-9._-]{20,})'),
        "phone": re.compile(r"(\+?\d{10,15})"),
    }

    SENSITIVE_FIELDS = {
        "api_key",
        "secret",
        "key_secret",
        "webhook_secret",
        "token",
        "access_token",
        "refresh_token",
        "private_key",
        "authorization",
        "x-api-key",
        "phone",
        "user_phone",
    }

    @classmethod
    def _mask(cls, value: str, mask_char: str = "*") -> str:
        if len(value) > 8:
            return f"{value[:2]}{mask_char * (len(value) - 4)}{value[-2:]}"
        return mask_char * len(value)

    @classmethod
    def sanitize_text(cls, text: Any) -> str:
        sanitized = text if isinstance(text, str) else str(text)
        for pattern_name, pattern in cls.SENSITIVE_PATTERNS.items():

            def replace_match(match, name=pattern_name):
                if len(match.groups()) > 1:
                    return f"{match.group(1)}[REDACTED-{name.upper()}:{cls._mask(match.group(2))}]"
                return f"[REDACTED-{name.upper()}:{cls._mask(match.group(1))}]"

            sanitized = pattern.sub(replace_match, sanitized)
        return sanitized

    @classmethod
    def sanitize_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key, value in data.items():
            if str(key).lower() in cls.SENSITIVE_FIELDS and value is not None:
                result[key] = f"[REDACTED:{cls._mask(str(value))}]"
            elif isinstance(value, dict):
                result[key] = cls.sanitize_dict(value)
            elif isinstance(value, list):
                result[key] = cls.sanitize_list(value)
            elif isinstance(value, str):
                result[key] = cls.sanitize_text(value)
            else:
                result[key] = value
        return result

    @classmethod
    def sanitize_list(cls, data: List[Any]) -> List[Any]:
        result = []
        for item in data:
            if isinstance(item, dict):
                result.append(cls.sanitize_dict(item))
            elif isinstance(item, list):
                result.append(cls.sanitize_list(item))
            elif isinstance(item, str):
                result.append(cls.sanitize_text(item))
            else:
                result.append(item)
        return result


data_sanitizer = DataSanitizer()


def sanitize_for_log(data: Any) -> str:
    """Sanitize any data for safe logging"""
    if isinstance(data, dict):
        return json.dumps(data_sanitizer.sanitize_dict(data), default=str)
    elif isinstance(data, list):
        return json.dumps(data_sanitizer.sanitize_list(data), default=str)
    return data_sanitizer.sanitize_text(str(data))


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "<none>"
    return f"{'*' * max(len(phone) - 4, 0)}{phone[-4:]}"


# Failure categories recorded on transactions. The message is what plan
# owners see; raw upstream text never reaches this column.
FAILURE_MESSAGES = {
    "user_incomplete": "Your account setup is incomplete (wallet or vault not provisioned).",
    "conversion_error": "Conversion failed: exchange rate unavailable. The investment will be retried.",
    "chain_rejected": "The investment transaction was rejected on-chain.",
    "chain_unconfirmed": "The investment transaction could not be confirmed.",
    "cancelled": "cancelled",
    "timeout": "The investment timed out before submission and will be retried.",
    "payment_failed": "Payment failed",
    "internal_error": "The investment could not be processed due to an internal error.",
}


def safe_failure_reason(category: str, detail: Optional[str] = None) -> str:
    """
    Build the user-facing failure message for a category.

    An optional detail (for example a Move VM status code) is appended only
    after sanitization and truncation.
    """
    base = FAILURE_MESSAGES.get(category, FAILURE_MESSAGES["internal_error"])
    if not detail:
        return base
    clean = data_sanitizer.sanitize_text(detail).strip()
    if len(clean) > 120:
        clean = clean[:117] + "..."
    return f"{base} ({clean})"
