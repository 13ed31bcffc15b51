"""Lemon Squeezy adapter.

Inbound: JSON webhooks (signed with X-Signature, see signature_verification)
normalized into BillingEvent.
Outbound: cancel / resume subscriptions through the JSON:API REST endpoints.

Checkout custom data carries user_id and business_id in meta.custom_data.
"""
import hashlib
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from models import BillingEvent, BillingEventKind, BillingProvider, SubscriptionStatus, utc_now
from services.plan_registry import plan_registry
from services.provider_errors import ProviderAPIError

logger = logging.getLogger(__name__)

LEMONSQUEEZY_API_BASE_URL = "https://api.lemonsqueezy.com/v1"
REQUEST_TIMEOUT_SECONDS = 15.0

EVENT_KIND_MAP = {
    "subscription_created": BillingEventKind.CHARGED,
    "subscription_updated": BillingEventKind.PLAN_CHANGED,
    "subscription_cancelled": BillingEventKind.CANCELLED,
    "subscription_resumed": BillingEventKind.RESUMED,
    "subscription_unpaused": BillingEventKind.RESUMED,
    "subscription_paused": BillingEventKind.SUSPENDED,
    "subscription_expired": BillingEventKind.TERMINATED,
    "subscription_payment_success": BillingEventKind.RENEWED,
    "subscription_payment_failed": BillingEventKind.PAYMENT_FAILED,
    "subscription_payment_refunded": BillingEventKind.REFUNDED,
    "order_created": BillingEventKind.PACK_PURCHASED,
    "order_refunded": BillingEventKind.PACK_REFUNDED,
}

# subscription.attributes.status; expired (and anything unknown) maps to None
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.ACTIVE,
    "cancelled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.SUSPENDED,
}


class LemonSqueezyPayloadError(ValueError):
    """Body is valid JSON but not a Lemon Squeezy webhook envelope."""


def _parse_timestamp(raw) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"LEMONSQUEEZY_UNPARSEABLE_DATE value={raw!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _str_or_none(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _provider_status(attributes: Dict[str, Any]) -> Optional[SubscriptionStatus]:
    status = PROVIDER_STATUS_MAP.get(attributes.get("status"))
    if status is None and attributes.get("cancelled"):
        return SubscriptionStatus.CANCELLED
    return status


def compute_event_id(payload: Dict[str, Any], raw_body: bytes) -> str:
    webhook_id = (payload.get("meta") or {}).get("webhook_id")
    if webhook_id:
        return str(webhook_id)
    return hashlib.sha256(raw_body).hexdigest()


def to_billing_event(payload: Dict[str, Any], raw_body: bytes,
                     occurred_at: Optional[datetime] = None) -> BillingEvent:
    """Normalize a verified webhook payload into a BillingEvent."""
    meta = payload.get("meta")
    data = payload.get("data")
    if not isinstance(meta, dict) or not isinstance(data, dict) or not meta.get("event_name"):
        raise LemonSqueezyPayloadError("Missing meta.event_name or data")

    event_name = meta["event_name"]
    custom = meta.get("custom_data") or {}
    attributes = data.get("attributes") or {}
    kind = EVENT_KIND_MAP.get(event_name, BillingEventKind.INFORMATIONAL)

    # Invoice events carry the subscription id as an attribute, not data.id
    if data.get("type") == "subscription-invoices":
        subscription_id = _str_or_none(attributes.get("subscription_id"))
    elif data.get("type") == "orders":
        subscription_id = None
    else:
        subscription_id = _str_or_none(data.get("id"))

    order_id = _str_or_none(data.get("id")) if data.get("type") == "orders" else _str_or_none(attributes.get("order_id"))

    plan = None
    period = None
    pack = None
    if kind in (BillingEventKind.PACK_PURCHASED, BillingEventKind.PACK_REFUNDED):
        variant_id = (attributes.get("first_order_item") or {}).get("variant_id")
        pack = plan_registry.pack_from_lemonsqueezy_variant(variant_id)
        if pack is None:
            # Subscription orders also emit order_* events; the subscription_* event carries the state
            kind = BillingEventKind.INFORMATIONAL
    else:
        resolved = plan_registry.plan_from_lemonsqueezy_variant(attributes.get("variant_id"))
        if resolved:
            plan, period = resolved

    total = attributes.get("total")
    return BillingEvent(
        provider=BillingProvider.LEMONSQUEEZY,
        event_id=compute_event_id(payload, raw_body),
        kind=kind,
        raw_type=event_name,
        user_id=_str_or_none(custom.get("user_id")),
        business_id=_str_or_none(custom.get("business_id")),
        order_id=order_id,
        subscription_id=subscription_id,
        customer_id=_str_or_none(attributes.get("customer_id")),
        plan=plan,
        billing_period=period,
        pack_id=pack["id"] if pack else None,
        pack_messages=pack["messages"] if pack else None,
        expires_at=_parse_timestamp(attributes.get("renews_at")),
        provider_status=_provider_status(attributes),
        # Lemon Squeezy emits payment_failed after its own retry schedule
        terminal_failure=kind == BillingEventKind.PAYMENT_FAILED,
        amount=_str_or_none(total),
        currency=_str_or_none(attributes.get("currency")),
        customer_email=_str_or_none(attributes.get("user_email")),
        occurred_at=occurred_at or utc_now(),
    )


class LemonSqueezyService:
    """Lemon Squeezy subscription API."""

    PROVIDER = "lemonsqueezy"

    def _headers(self) -> Dict[str, str]:
        api_key = os.getenv("LEMONSQUEEZY_API_KEY", "")
        if not api_key:
            raise ProviderAPIError(self.PROVIDER, "LEMONSQUEEZY_API_KEY not configured")
        return {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/vnd.api+json",
            "Content-Type": "application/vnd.api+json",
        }

    async def _request(self, method: str, subscription_id: str, body: Optional[Dict] = None) -> Dict:
        url = f"{LEMONSQUEEZY_API_BASE_URL}/subscriptions/{subscription_id}"
        headers = self._headers()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method, url, json=body, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS
                )
        except httpx.TimeoutException:
            logger.error(f"LEMONSQUEEZY_API_TIMEOUT method={method} subscription_id={subscription_id}")
            raise ProviderAPIError(self.PROVIDER, f"{method} timed out")
        except httpx.HTTPError as e:
            logger.error(f"LEMONSQUEEZY_API_ERROR method={method} subscription_id={subscription_id} error={e}")
            raise ProviderAPIError(self.PROVIDER, f"{method} failed: {e}")

        if response.status_code >= 400:
            logger.error(
                f"LEMONSQUEEZY_API_REJECTED method={method} subscription_id={subscription_id} "
                f"status={response.status_code} body={response.text[:200]}"
            )
            raise ProviderAPIError(self.PROVIDER, f"{method} rejected", response.status_code)

        logger.info(f"LEMONSQUEEZY_API_OK method={method} subscription_id={subscription_id}")
        try:
            return response.json()
        except ValueError:
            return {}

    async def cancel_subscription(self, subscription_id: str) -> Dict:
        """Cancel at period end (Lemon Squeezy keeps it active until ends_at)."""
        return await self._request("DELETE", subscription_id)

    async def resume_subscription(self, subscription_id: str) -> Dict:
        body = {
            "data": {
                "type": "subscriptions",
                "id": str(subscription_id),
                "attributes": {"cancelled": False},
            }
        }
        return await self._request("PATCH", subscription_id, body)


# Singleton instance
lemonsqueezy_service = LemonSqueezyService()
