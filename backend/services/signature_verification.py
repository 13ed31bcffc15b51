"""Webhook signature verification for billing providers.

Two schemes:
- Lemon Squeezy: HMAC-SHA256 (hex) of the exact raw request body, sent in X-Signature.
- PayPro Global: keyed MD5 hash of ORDER_ID + IPN secret, plus a SHA-256
  signature over the order fields and the validation key. Both must match.
  The request must also come from a PayPro IPN address unless in test mode.

All functions are pure: configuration is passed in by the caller.
Every comparison uses hmac.compare_digest.
"""
import hashlib
import hmac
from typing import Iterable, Optional

# Published PayPro Global IPN source addresses
DEFAULT_PAYPRO_IPN_IPS = ("198.199.123.239", "157.230.8.40")

# PayPro sends MD5("1") as HASH for test orders
PAYPRO_TEST_HASH = hashlib.md5(b"1").hexdigest()


class SignatureVerificationError(Exception):
    """Raised when a webhook fails authenticity checks."""

    def __init__(self, reason: str, status_code: int = 400):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


def _safe_equals(expected: str, presented: str) -> bool:
    return hmac.compare_digest(expected.encode(), presented.encode())


# ============================================================================
# LEMON SQUEEZY - HMAC over raw body
# ============================================================================

def verify_hmac_sha256(raw_body: bytes, presented_signature: Optional[str], secret: Optional[str]) -> bool:
    """True only if presented_signature is the hex HMAC-SHA256 of raw_body under secret."""
    if not secret or not presented_signature:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return _safe_equals(expected, presented_signature.strip().lower())


# ============================================================================
# PAYPRO GLOBAL - keyed hash + field signature + IP allow-list
# ============================================================================

def paypro_expected_hash(order_id: str, ipn_secret: str, test_mode: bool = False) -> str:
    if test_mode:
        return PAYPRO_TEST_HASH
    return hashlib.md5(f"{order_id}{ipn_secret}".encode()).hexdigest()


def paypro_expected_signature(
    order_id: str,
    order_status: str,
    order_total_amount: str,
    customer_email: str,
    validation_key: str,
    test_mode: bool,
    ipn_type_name: str,
) -> str:
    base = (
        f"{order_id}{order_status}{order_total_amount}{customer_email}"
        f"{validation_key}{'1' if test_mode else '0'}{ipn_type_name}"
    )
    return hashlib.sha256(base.encode()).hexdigest()


def verify_paypro_hash(order_id: str, presented_hash: Optional[str], ipn_secret: Optional[str],
                       test_mode: bool = False) -> bool:
    if not ipn_secret or not presented_hash:
        return False
    expected = paypro_expected_hash(order_id, ipn_secret, test_mode)
    return _safe_equals(expected, presented_hash.strip().lower())


def verify_paypro_signature(fields: dict, presented_signature: Optional[str],
                            validation_key: Optional[str]) -> bool:
    """
    fields: the parsed IPN form (ORDER_ID, ORDER_STATUS, ORDER_TOTAL_AMOUNT,
    CUSTOMER_EMAIL, TEST_MODE, IPN_TYPE_NAME).
    """
    if not validation_key or not presented_signature:
        return False
    expected = paypro_expected_signature(
        order_id=fields.get("ORDER_ID", ""),
        order_status=fields.get("ORDER_STATUS", ""),
        order_total_amount=fields.get("ORDER_TOTAL_AMOUNT", ""),
        customer_email=fields.get("CUSTOMER_EMAIL", ""),
        validation_key=validation_key,
        test_mode=fields.get("TEST_MODE") == "1",
        ipn_type_name=fields.get("IPN_TYPE_NAME", ""),
    )
    return _safe_equals(expected, presented_signature.strip().lower())


def normalize_ip(ip: Optional[str]) -> str:
    value = (ip or "").strip()
    if value.startswith("::ffff:"):
        value = value[len("::ffff:"):]
    return value


def is_paypro_ip_allowed(ip: Optional[str], allowed_ips: Iterable[str], test_mode: bool = False) -> bool:
    if test_mode:
        return True
    normalized = normalize_ip(ip)
    return bool(normalized) and normalized in {normalize_ip(a) for a in allowed_ips}


def verify_paypro_ipn(fields: dict, ipn_secret: Optional[str], validation_key: Optional[str]) -> bool:
    """Both PayPro schemes must pass; missing configuration is a failure."""
    test_mode = fields.get("TEST_MODE") == "1"
    order_id = fields.get("ORDER_ID", "")
    if not verify_paypro_hash(order_id, fields.get("HASH"), ipn_secret, test_mode):
        return False
    return verify_paypro_signature(fields, fields.get("SIGNATURE"), validation_key)
