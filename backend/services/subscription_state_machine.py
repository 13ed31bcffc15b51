"""Subscription State Machine - the only code that decides subscription state.

apply_billing_event(current, event) -> Transition

Pure: no I/O, no clock. The time base is event.occurred_at so the same
(current, event) pair always produces the same result, and applying an event
to its own output changes nothing. The caller persists the returned
subscription and executes the side-effect descriptors.

Rules:
- current is None -> no-op. Subscriptions are created at signup, never here.
- Every field update is an absolute assignment, except the message-pack
  credit and its reversal, which are guarded by applied_pack_orders.
- An event for a provider subscription other than the one on record
  (including one already cleared by terminate/refund) is orphaned and ignored,
  except charged (a new purchase) and the one-time pack order kinds.
- A pack refund takes back only that order's credit; the subscription is untouched.
- cancelled keeps plan, limit and expiry (grace period until expires_at).
"""
import logging
from typing import Dict, List, Optional, Any

from pydantic import BaseModel, Field

from models import (
    Subscription, BillingEvent, BillingEventKind, BillingProvider,
    SubscriptionStatus, PlanId, SideEffect,
)
from services.plan_registry import plan_registry, add_billing_period, TRIAL_FLOOR_MESSAGES

logger = logging.getLogger(__name__)


# Side-effect descriptor kinds
EFFECT_RESET_MESSAGES_USED = "reset_messages_used"
EFFECT_NOTIFY_PAYMENT = "notify_payment"
EFFECT_GRANT_MESSAGES = "grant_messages"
EFFECT_CORRELATION_CLEARED = "correlation_cleared"

# Kinds that may target a subscription other than the stored one
KINDS_EXEMPT_FROM_ORPHAN_CHECK = frozenset({
    BillingEventKind.CHARGED,
    BillingEventKind.PACK_PURCHASED,
    BillingEventKind.PACK_REFUNDED,
    BillingEventKind.ADMIN_OVERRIDE,
    BillingEventKind.INFORMATIONAL,
})

# Fields an operator may force through an override
OVERRIDABLE_FIELDS = ("plan", "status", "expires_at", "messages_limit", "messages_used", "billing_period")

CORRELATION_FIELDS = {
    BillingProvider.PAYPRO: {
        "order_id": "paypro_order_id",
        "subscription_id": "paypro_subscription_id",
        "customer_id": "paypro_customer_id",
    },
    BillingProvider.LEMONSQUEEZY: {
        "order_id": "lemonsqueezy_order_id",
        "subscription_id": "lemonsqueezy_subscription_id",
        "customer_id": "lemonsqueezy_customer_id",
    },
}


class Transition(BaseModel):
    """Result of applying one event: new state plus what the caller should do."""
    subscription: Optional[Subscription] = None
    side_effects: List[SideEffect] = Field(default_factory=list)
    applied: bool = False
    reason: str = ""


def provider_subscription_field(provider: BillingProvider) -> Optional[str]:
    return CORRELATION_FIELDS.get(provider, {}).get("subscription_id")


def pack_order_key(event: BillingEvent) -> str:
    return f"{event.provider.value}:{event.order_id or event.event_id}"


def is_orphaned(current: Subscription, event: BillingEvent) -> bool:
    if event.kind in KINDS_EXEMPT_FROM_ORPHAN_CHECK or not event.subscription_id:
        return False
    field = provider_subscription_field(event.provider)
    if field is None:
        return False
    return getattr(current, field) != event.subscription_id


def _correlation_updates(event: BillingEvent) -> Dict[str, Any]:
    updates = {}
    for event_attr, field in CORRELATION_FIELDS.get(event.provider, {}).items():
        value = getattr(event, event_attr)
        if value:
            updates[field] = value
    return updates


def _no_op(current: Optional[Subscription], reason: str) -> Transition:
    return Transition(subscription=current, applied=False, reason=reason)


def _with(current: Subscription, updates: Dict[str, Any], event: BillingEvent) -> Subscription:
    data = current.model_dump()
    data.update(updates)
    data["updated_at"] = event.occurred_at
    return Subscription.model_validate(data)


# ============================================================================
# Per-kind handlers: (current, event) -> (updates, side_effects) or reason str
# ============================================================================

def _charged(current: Subscription, event: BillingEvent):
    plan = event.plan or current.plan
    period = event.billing_period or current.billing_period
    expires_at = event.expires_at or add_billing_period(event.occurred_at, period)

    updates = {
        "status": SubscriptionStatus.ACTIVE,
        "plan": plan,
        "messages_used": 0,
        "messages_limit": plan_registry.get_messages_limit(plan),
        "expires_at": expires_at,
        "billing_period": period,
        **_correlation_updates(event),
    }
    effects = [
        SideEffect(kind=EFFECT_RESET_MESSAGES_USED),
        SideEffect(kind=EFFECT_NOTIFY_PAYMENT, payload={
            "plan": plan.value,
            "plan_name": plan_registry.get_plan(plan)["name"],
            "period": period.value,
            "amount": event.amount if event.amount is not None else str(plan_registry.get_price(plan, period)),
            "currency": event.currency,
            "customer_email": event.customer_email,
        }),
    ]
    return updates, effects


def _renewed(current: Subscription, event: BillingEvent):
    plan = event.plan or current.plan
    period = event.billing_period or current.billing_period
    updates = {
        "status": SubscriptionStatus.ACTIVE,
        "plan": plan,
        "messages_used": 0,
        "messages_limit": plan_registry.get_messages_limit(plan),
        "expires_at": event.expires_at or add_billing_period(event.occurred_at, period),
        "billing_period": period,
    }
    return updates, [SideEffect(kind=EFFECT_RESET_MESSAGES_USED)]


def _resumed(current: Subscription, event: BillingEvent):
    return {"status": SubscriptionStatus.ACTIVE}, []


def _plan_changed(current: Subscription, event: BillingEvent):
    plan = event.plan or current.plan
    updates = {
        "plan": plan,
        "messages_limit": plan_registry.get_messages_limit(plan),
    }
    if event.provider_status:
        updates["status"] = event.provider_status
    if event.billing_period:
        updates["billing_period"] = event.billing_period
    if event.expires_at:
        updates["expires_at"] = event.expires_at
    return updates, []


def _cancelled(current: Subscription, event: BillingEvent):
    return {"status": SubscriptionStatus.CANCELLED}, []


def _payment_failed(current: Subscription, event: BillingEvent):
    if not event.terminal_failure:
        return "payment_retry_pending"
    return {"status": SubscriptionStatus.PAST_DUE}, []


def _suspended(current: Subscription, event: BillingEvent):
    return {"status": SubscriptionStatus.SUSPENDED}, []


def _terminated(current: Subscription, event: BillingEvent):
    field = provider_subscription_field(event.provider)
    updates = {"status": SubscriptionStatus.EXPIRED}
    effects = []
    if field:
        updates[field] = None
        effects.append(SideEffect(kind=EFFECT_CORRELATION_CLEARED, payload={"field": field}))
    return updates, effects


def _refunded(current: Subscription, event: BillingEvent):
    updates, effects = _terminated(current, event)
    updates["plan"] = PlanId.TRIAL
    updates["messages_limit"] = TRIAL_FLOOR_MESSAGES
    return updates, effects


def _pack_purchased(current: Subscription, event: BillingEvent):
    key = pack_order_key(event)
    if key in current.applied_pack_orders:
        return "pack_already_applied"
    count = event.pack_messages or 0
    if count <= 0:
        return "pack_unknown"

    limit = current.messages_limit
    if not plan_registry.is_unlimited(limit):
        limit += count

    updates = {
        "messages_limit": limit,
        "applied_pack_orders": list(current.applied_pack_orders) + [key],
    }
    pack = plan_registry.get_pack(event.pack_id) or {}
    effects = [
        SideEffect(kind=EFFECT_GRANT_MESSAGES, payload={"count": count, "pack_id": event.pack_id}),
        SideEffect(kind=EFFECT_NOTIFY_PAYMENT, payload={
            "plan": event.pack_id,
            "plan_name": pack.get("name", event.pack_id),
            "period": "one-time",
            "amount": event.amount if event.amount is not None else str(pack.get("price", "")),
            "currency": event.currency,
            "customer_email": event.customer_email,
        }),
    ]
    return updates, effects


def _pack_refunded(current: Subscription, event: BillingEvent):
    key = pack_order_key(event)
    if key not in current.applied_pack_orders:
        return "pack_not_applied"

    limit = current.messages_limit
    if not plan_registry.is_unlimited(limit):
        limit = max(limit - (event.pack_messages or 0), 0)

    updates = {
        "messages_limit": limit,
        "applied_pack_orders": [k for k in current.applied_pack_orders if k != key],
    }
    return updates, []


def _admin_override(current: Subscription, event: BillingEvent):
    override = {k: v for k, v in (event.override or {}).items() if k in OVERRIDABLE_FIELDS and v is not None}
    if not override:
        return "empty_override"
    if "plan" in override and "messages_limit" not in override:
        override["messages_limit"] = plan_registry.get_messages_limit(override["plan"])
    return override, []


def _informational(current: Subscription, event: BillingEvent):
    return "informational"


HANDLERS = {
    BillingEventKind.CHARGED: _charged,
    BillingEventKind.RENEWED: _renewed,
    BillingEventKind.RESUMED: _resumed,
    BillingEventKind.PLAN_CHANGED: _plan_changed,
    BillingEventKind.CANCELLED: _cancelled,
    BillingEventKind.PAYMENT_FAILED: _payment_failed,
    BillingEventKind.SUSPENDED: _suspended,
    BillingEventKind.TERMINATED: _terminated,
    BillingEventKind.REFUNDED: _refunded,
    BillingEventKind.PACK_PURCHASED: _pack_purchased,
    BillingEventKind.PACK_REFUNDED: _pack_refunded,
    BillingEventKind.ADMIN_OVERRIDE: _admin_override,
    BillingEventKind.INFORMATIONAL: _informational,
}


def apply_billing_event(current: Optional[Subscription], event: BillingEvent) -> Transition:
    """Reduce one normalized billing event onto the current subscription."""
    if current is None:
        return _no_op(None, "no_subscription")

    if is_orphaned(current, event):
        return _no_op(current, "orphaned")

    result = HANDLERS[event.kind](current, event)
    if isinstance(result, str):
        return _no_op(current, result)

    updates, effects = result
    return Transition(
        subscription=_with(current, updates, event),
        side_effects=effects,
        applied=True,
        reason=event.kind.value,
    )


def changed_fields(before: Subscription, after: Subscription) -> Dict[str, Any]:
    """Fields whose value differs, for a single $set update."""
    old = before.to_document()
    new = after.to_document()
    return {k: v for k, v in new.items() if old.get(k) != v}
