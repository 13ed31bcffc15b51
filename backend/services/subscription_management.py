"""Customer self-service subscription management (cancel / resume).

The provider API is called first; local state changes only after the provider
confirms. A provider failure raises ProviderAPIError and leaves the stored
subscription untouched. The local change itself goes through the state machine
like any webhook, so a later provider webhook for the same change is a no-op.
"""
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from database import database
from models import AuditAction, BillingEvent, BillingEventKind, BillingProvider, Subscription, UserRole
from services.billing_webhook_service import billing_webhook_service
from services.lemonsqueezy_service import lemonsqueezy_service
from services.paypro_service import paypro_service
from services.plan_registry import plan_registry
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

MANAGE_ACTIONS = ("cancel", "resume")


class SubscriptionNotFoundError(LookupError):
    pass


class SubscriptionNotManageableError(ValueError):
    """No provider subscription on record (trial or already terminated)."""


def days_left(expires_at: datetime, now: datetime) -> int:
    seconds = (expires_at - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


async def _load_for_user(user_id: str) -> Tuple[Optional[str], Optional[Subscription]]:
    db = database.get_db()
    business = await db.businesses.find_one({"user_id": user_id}, {"_id": 0})
    if not business:
        return None, None
    doc = await db.subscriptions.find_one({"business_id": business["business_id"]}, {"_id": 0})
    return business["business_id"], Subscription.model_validate(doc) if doc else None


async def get_subscription_overview(user_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    _, sub = await _load_for_user(user_id)
    if sub is None:
        return None
    provider, _ = _provider_for(sub)
    return {
        "plan": sub.plan.value,
        "status": sub.status.value,
        "messages_used": sub.messages_used,
        "messages_limit": sub.messages_limit,
        "days_left": days_left(sub.expires_at, now),
        "expires_at": sub.expires_at.isoformat(),
        "billing_period": sub.billing_period.value,
        "provider": provider.value if provider else None,
        "manageable": provider is not None,
        "has_access": plan_registry.has_entitlement(sub.status.value, sub.expires_at, now),
    }


def _provider_for(sub: Subscription):
    if sub.paypro_subscription_id:
        return BillingProvider.PAYPRO, sub.paypro_subscription_id
    if sub.lemonsqueezy_subscription_id:
        return BillingProvider.LEMONSQUEEZY, sub.lemonsqueezy_subscription_id
    return None, None


async def manage_subscription(user_id: str, action: str, ip_address: Optional[str] = None) -> str:
    """Cancel or resume the caller's subscription. Returns a user-facing message."""
    if action not in MANAGE_ACTIONS:
        raise ValueError(f"Unsupported action: {action}")

    business_id, sub = await _load_for_user(user_id)
    if sub is None:
        raise SubscriptionNotFoundError("Subscription not found")

    provider, provider_subscription_id = _provider_for(sub)
    if provider is None:
        raise SubscriptionNotManageableError("Subscription management is not available during the trial")

    client = paypro_service if provider == BillingProvider.PAYPRO else lemonsqueezy_service
    if action == "cancel":
        await client.cancel_subscription(provider_subscription_id)
    else:
        await client.resume_subscription(provider_subscription_id)

    event = BillingEvent(
        provider=provider,
        event_id=f"manage-{uuid.uuid4()}",
        kind=BillingEventKind.CANCELLED if action == "cancel" else BillingEventKind.RESUMED,
        raw_type=f"manage_{action}",
        business_id=business_id,
        subscription_id=provider_subscription_id,
    )
    transition = await billing_webhook_service.apply_and_persist(
        sub, event,
        actor_role=UserRole.ROLE_CLIENT.value,
        actor_id=user_id,
        ip_address=ip_address,
    )

    await create_audit_log(
        action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED if action == "cancel" else AuditAction.SUBSCRIPTION_RESUME_REQUESTED,
        actor_role=UserRole.ROLE_CLIENT,
        actor_id=user_id,
        business_id=business_id,
        resource_type="subscription",
        resource_id=business_id,
        metadata={
            "provider": provider.value,
            "provider_subscription_id": provider_subscription_id,
            "applied": transition.applied,
        },
        ip_address=ip_address,
    )
    logger.info(
        f"SUBSCRIPTION_MANAGE action={action} business_id={business_id} provider={provider.value} "
        f"applied={transition.applied}"
    )

    if action == "cancel":
        return "Subscription cancelled. You can keep using the service until the end of the paid period."
    return "Subscription resumed."
