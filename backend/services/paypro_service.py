"""PayPro Global adapter.

Inbound: parse form-encoded IPN notifications and normalize them into BillingEvent.
Outbound: subscription Suspend (cancel) / Renew (resume) via the PayPro REST API.

Custom checkout fields arrive in ORDER_CUSTOM_FIELDS as
"x-userId=...,x-planId=...,x-billingPeriod=...,x-packId=..." (comma or
semicolon separated).

Configuration (environment, read at call time):
- PAYPRO_IPN_SECRET_KEY, PAYPRO_VALIDATION_KEY: IPN verification
- PAYPRO_TEST_MODE: "true" accepts test IPNs and skips the IP allow-list
- PAYPRO_ALLOWED_IPS: comma separated override of the published IPN addresses
- PAYPRO_VENDOR_ACCOUNT_ID, PAYPRO_API_SECRET_KEY: REST API credentials
"""
import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
from pydantic import BaseModel, Field

from models import BillingEvent, BillingEventKind, BillingProvider, utc_now
from services.plan_registry import plan_registry
from services.provider_errors import ProviderAPIError
from services.signature_verification import DEFAULT_PAYPRO_IPN_IPS

logger = logging.getLogger(__name__)

PAYPRO_API_BASE_URL = "https://store.payproglobal.com/api"
REQUEST_TIMEOUT_SECONDS = 15.0


# ============================================================================
# IPN TYPES
# ============================================================================
class IPNType:
    ORDER_CHARGED = "1"
    ORDER_REFUNDED = "2"
    ORDER_CHARGED_BACK = "3"
    ORDER_DECLINED = "4"
    ORDER_PARTIALLY_REFUNDED = "5"
    SUBSCRIPTION_CHARGE_SUCCEED = "6"
    SUBSCRIPTION_CHARGE_FAILED = "7"
    SUBSCRIPTION_SUSPENDED = "8"
    SUBSCRIPTION_RENEWED = "9"
    SUBSCRIPTION_TERMINATED = "10"
    SUBSCRIPTION_FINISHED = "11"
    LICENSE_REQUEST = "12"
    TRIAL_CHARGE = "13"
    ORDER_CHARGEBACK_WON = "14"
    ORDER_CUSTOMER_INFO_CHANGED = "15"
    ORDER_ON_WAITING = "17"
    SUBSCRIPTION_PAYMENT_INFO_CHANGED = "21"


# IPN type -> normalized kind. Anything not listed is informational.
IPN_KIND_MAP = {
    IPNType.ORDER_CHARGED: BillingEventKind.CHARGED,
    IPNType.TRIAL_CHARGE: BillingEventKind.CHARGED,
    IPNType.SUBSCRIPTION_CHARGE_SUCCEED: BillingEventKind.RENEWED,
    # Soft failure: PayPro retries, suspension follows if all retries fail
    IPNType.SUBSCRIPTION_CHARGE_FAILED: BillingEventKind.PAYMENT_FAILED,
    IPNType.SUBSCRIPTION_SUSPENDED: BillingEventKind.SUSPENDED,
    IPNType.SUBSCRIPTION_RENEWED: BillingEventKind.RESUMED,
    IPNType.SUBSCRIPTION_TERMINATED: BillingEventKind.TERMINATED,
    IPNType.SUBSCRIPTION_FINISHED: BillingEventKind.TERMINATED,
    IPNType.ORDER_REFUNDED: BillingEventKind.REFUNDED,
    IPNType.ORDER_CHARGED_BACK: BillingEventKind.REFUNDED,
}

# Order kinds re-targeted when the order is for a message pack
PACK_ORDER_KINDS = {
    BillingEventKind.CHARGED: BillingEventKind.PACK_PURCHASED,
    BillingEventKind.REFUNDED: BillingEventKind.PACK_REFUNDED,
}


class PayProIPN(BaseModel):
    """Parsed IPN form. Field values are kept as the provider sent them."""
    ipn_type_id: str = ""
    ipn_type_name: str = ""
    test_mode: bool = False
    order_id: str = ""
    order_status: str = ""
    order_total_amount: str = ""
    order_currency: str = ""
    customer_id: str = ""
    customer_email: str = ""
    product_id: str = ""
    subscription_id: str = ""
    subscription_next_charge_date: str = ""
    hash: str = ""
    signature: str = ""

    # Custom checkout fields
    user_id: str = ""
    business_id: str = ""
    plan_id: str = ""
    billing_period: str = ""
    pack_id: str = ""

    form: Dict[str, str] = Field(default_factory=dict)


def parse_custom_fields(raw: str) -> Dict[str, str]:
    result = {}
    for pair in re.split(r"[,;]", raw or ""):
        key, sep, value = pair.partition("=")
        key = key.strip()
        value = value.strip()
        if not sep or not key or not value:
            continue
        if key.startswith("x-"):
            key = key[2:]
        result[key] = value
    return result


def parse_ipn(raw_body: bytes) -> PayProIPN:
    """Decode an application/x-www-form-urlencoded IPN body."""
    fields = dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))
    custom = parse_custom_fields(fields.get("ORDER_CUSTOM_FIELDS", ""))

    return PayProIPN(
        ipn_type_id=fields.get("IPN_TYPE_ID", ""),
        ipn_type_name=fields.get("IPN_TYPE_NAME", ""),
        test_mode=fields.get("TEST_MODE") == "1",
        order_id=fields.get("ORDER_ID", ""),
        order_status=fields.get("ORDER_STATUS", ""),
        order_total_amount=fields.get("ORDER_TOTAL_AMOUNT", ""),
        order_currency=fields.get("ORDER_CURRENCY_CODE", ""),
        customer_id=fields.get("CUSTOMER_ID", ""),
        customer_email=fields.get("CUSTOMER_EMAIL", ""),
        product_id=fields.get("PRODUCT_ID", ""),
        subscription_id=fields.get("SUBSCRIPTION_ID", ""),
        subscription_next_charge_date=fields.get("SUBSCRIPTION_NEXT_CHARGE_DATE", ""),
        hash=fields.get("HASH", ""),
        signature=fields.get("SIGNATURE", ""),
        user_id=custom.get("userId", ""),
        business_id=custom.get("businessId", ""),
        plan_id=custom.get("planId", ""),
        billing_period=custom.get("billingPeriod", ""),
        pack_id=custom.get("packId", ""),
        form=fields,
    )


def _parse_next_charge_date(raw: str) -> Optional[datetime]:
    value = (raw or "").strip()
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%m/%d/%Y %H:%M:%S", "%Y-%m-%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"PAYPRO_UNPARSEABLE_DATE value={value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def compute_event_id(raw_body: bytes) -> str:
    """PayPro IPNs carry no delivery id; identical redeliveries hash identically."""
    return hashlib.sha256(raw_body).hexdigest()


def to_billing_event(ipn: PayProIPN, raw_body: bytes, occurred_at: Optional[datetime] = None) -> BillingEvent:
    """Normalize a verified IPN into a provider-agnostic BillingEvent."""
    kind = IPN_KIND_MAP.get(ipn.ipn_type_id, BillingEventKind.INFORMATIONAL)

    pack = plan_registry.get_pack(ipn.pack_id) or plan_registry.pack_from_paypro_product(ipn.product_id)
    if pack and kind in PACK_ORDER_KINDS:
        # Pack orders carry no subscription; a refund reverses only the pack credit
        kind = PACK_ORDER_KINDS[kind]
    pack_order = kind in (BillingEventKind.PACK_PURCHASED, BillingEventKind.PACK_REFUNDED)

    plan = plan_registry.parse_plan_code(ipn.plan_id)
    period = plan_registry.parse_billing_period(ipn.billing_period)
    if plan is None:
        by_product = plan_registry.plan_from_paypro_product(ipn.product_id)
        if by_product:
            plan, product_period = by_product
            period = period or product_period

    return BillingEvent(
        provider=BillingProvider.PAYPRO,
        event_id=compute_event_id(raw_body),
        kind=kind,
        raw_type=f"{ipn.ipn_type_id}:{ipn.ipn_type_name}",
        user_id=ipn.user_id or None,
        business_id=ipn.business_id or None,
        order_id=ipn.order_id or None,
        subscription_id=ipn.subscription_id or None,
        customer_id=ipn.customer_id or None,
        plan=plan,
        billing_period=period,
        pack_id=pack["id"] if pack_order else None,
        pack_messages=pack["messages"] if pack_order else None,
        expires_at=_parse_next_charge_date(ipn.subscription_next_charge_date),
        terminal_failure=False,
        amount=ipn.order_total_amount or None,
        currency=ipn.order_currency or None,
        customer_email=ipn.customer_email or None,
        occurred_at=occurred_at or utc_now(),
    )


# ============================================================================
# CONFIGURATION
# ============================================================================

def is_test_mode_enabled() -> bool:
    return os.getenv("PAYPRO_TEST_MODE", "false").strip().lower() == "true"


def get_allowed_ips() -> List[str]:
    configured = os.getenv("PAYPRO_ALLOWED_IPS", "")
    ips = [ip.strip() for ip in configured.split(",") if ip.strip()]
    return ips or list(DEFAULT_PAYPRO_IPN_IPS)


def get_trusted_proxy_count() -> int:
    try:
        return max(int(os.getenv("PAYPRO_TRUSTED_PROXY_COUNT", "1")), 0)
    except ValueError:
        logger.warning("PAYPRO_TRUSTED_PROXY_COUNT is not an integer; using 1")
        return 1


def client_ip_from_headers(forwarded_for: Optional[str], fallback: Optional[str],
                           trusted_proxies: Optional[int] = None) -> str:
    """
    Caller address as seen by the outermost trusted proxy.

    Each trusted proxy appends one X-Forwarded-For hop, so the client is the
    hop trusted_proxies places from the right. Anything further left was sent
    by the caller and is ignored. With no trusted proxy, or fewer hops than
    expected, the socket peer is used.
    """
    if trusted_proxies is None:
        trusted_proxies = get_trusted_proxy_count()
    hops = [hop.strip() for hop in (forwarded_for or "").split(",") if hop.strip()]
    if trusted_proxies > 0 and len(hops) >= trusted_proxies:
        return hops[-trusted_proxies]
    return fallback or "unknown"


# ============================================================================
# REST API CLIENT
# ============================================================================
class PayProService:
    """PayPro Global subscription API."""

    PROVIDER = "paypro"

    def _credentials(self) -> Dict:
        vendor = os.getenv("PAYPRO_VENDOR_ACCOUNT_ID", "")
        secret = os.getenv("PAYPRO_API_SECRET_KEY", "")
        if not vendor or not secret:
            raise ProviderAPIError(self.PROVIDER, "PayPro API credentials not configured")
        try:
            vendor_id = int(vendor)
        except ValueError:
            raise ProviderAPIError(self.PROVIDER, "PAYPRO_VENDOR_ACCOUNT_ID must be numeric")
        return {"vendorAccountId": vendor_id, "apiSecretKey": secret}

    async def _call(self, operation: str, subscription_id: str) -> Dict:
        try:
            numeric_id = int(subscription_id)
        except (TypeError, ValueError):
            raise ProviderAPIError(self.PROVIDER, f"Invalid subscription id: {subscription_id!r}")

        payload = {"subscriptionId": numeric_id, **self._credentials()}
        url = f"{PAYPRO_API_BASE_URL}/Subscriptions/{operation}"

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json=payload, timeout=REQUEST_TIMEOUT_SECONDS)
        except httpx.TimeoutException:
            logger.error(f"PAYPRO_API_TIMEOUT operation={operation} subscription_id={subscription_id}")
            raise ProviderAPIError(self.PROVIDER, f"{operation} timed out")
        except httpx.HTTPError as e:
            logger.error(f"PAYPRO_API_ERROR operation={operation} subscription_id={subscription_id} error={e}")
            raise ProviderAPIError(self.PROVIDER, f"{operation} failed: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400 or data.get("isSuccess") is not True:
            errors = data.get("errors") or response.text[:200]
            logger.error(
                f"PAYPRO_API_REJECTED operation={operation} subscription_id={subscription_id} "
                f"status={response.status_code} errors={errors}"
            )
            raise ProviderAPIError(self.PROVIDER, f"{operation} rejected", response.status_code)

        logger.info(f"PAYPRO_API_OK operation={operation} subscription_id={subscription_id}")
        return data

    async def cancel_subscription(self, subscription_id: str) -> Dict:
        """Stop renewals; PayPro calls this Suspend."""
        return await self._call("Suspend", subscription_id)

    async def resume_subscription(self, subscription_id: str) -> Dict:
        return await self._call("Renew", subscription_id)


# Singleton instance
paypro_service = PayProService()
