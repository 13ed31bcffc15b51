"""Billing Webhook Service - provider-agnostic reconciliation with idempotency.

Every verified provider notification (already normalized into a BillingEvent by
the PayPro / Lemon Squeezy adapters) flows through here:

1. Event log: billing_events keyed by (provider, event_id). A row already
   PROCESSED / UNMATCHED / IGNORED is acknowledged without re-applying; a
   FAILED or stale PROCESSING row is claimed atomically and retried, and a
   PROCESSING row still in flight is acknowledged as a duplicate.
2. Correlation: business id, then user id, then provider subscription id,
   then provider order id.
3. Reduce: subscription_state_machine.apply_billing_event (pure).
4. Persist: one update_one with the changed fields.
5. Side effects (operator payment notification) - best-effort.
6. Audit log.

Correlation failures are recorded as UNMATCHED and acknowledged: the provider
cannot fix them by retrying. Unexpected errors mark the row FAILED and are
re-raised so the route answers 5xx and the provider redelivers.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction, BillingEvent, BillingEventKind, BillingEventStatus, BillingProvider,
    Subscription, UserRole,
)
from services.operator_notifier import operator_notifier
from services.subscription_state_machine import (
    CORRELATION_FIELDS, EFFECT_NOTIFY_PAYMENT, Transition,
    apply_billing_event, changed_fields, pack_order_key,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Rows in these states are final; a replay is acknowledged without re-applying
FINAL_EVENT_STATUSES = frozenset({
    BillingEventStatus.PROCESSED.value,
    BillingEventStatus.UNMATCHED.value,
    BillingEventStatus.IGNORED.value,
})


# A PROCESSING row older than this was abandoned by a crashed worker and may be reclaimed
STALE_PROCESSING_MINUTES = 10

# Reason reported when the applied_pack_orders guard loses a concurrent race
PACK_GUARD_REASONS = {
    BillingEventKind.PACK_PURCHASED: "pack_already_applied",
    BillingEventKind.PACK_REFUNDED: "pack_not_applied",
}


class WebhookOutcome(BaseModel):
    event_id: str
    status: str
    business_id: Optional[str] = None
    reason: Optional[str] = None
    duplicate: bool = False


def _raw_minimal(event: BillingEvent) -> Dict[str, Any]:
    """Identifying fields only - never the full provider payload."""
    return {
        "raw_type": event.raw_type,
        "order_id": event.order_id,
        "subscription_id": event.subscription_id,
        "customer_id": event.customer_id,
        "user_id": event.user_id,
        "plan": event.plan.value if event.plan else None,
        "billing_period": event.billing_period.value if event.billing_period else None,
        "pack_id": event.pack_id,
        "amount": event.amount,
        "currency": event.currency,
    }


class BillingWebhookService:
    """Applies normalized billing events to subscriptions exactly once."""

    # =========================================================================
    # Entry point
    # =========================================================================

    async def process_event(self, event: BillingEvent) -> WebhookOutcome:
        db = database.get_db()
        provider = event.provider.value
        logger.info(
            "WEBHOOK_RECEIVED provider=%s event_id=%s kind=%s raw_type=%s order_id=%s subscription_id=%s",
            provider, event.event_id, event.kind.value, event.raw_type, event.order_id, event.subscription_id,
        )

        key = {"provider": provider, "event_id": event.event_id}
        existing = await db.billing_events.find_one(key, {"_id": 0})
        if existing and existing.get("status") in FINAL_EVENT_STATUSES:
            logger.info(
                "WEBHOOK_DUPLICATE provider=%s event_id=%s status=%s",
                provider, event.event_id, existing.get("status"),
            )
            return WebhookOutcome(
                event_id=event.event_id,
                status=existing["status"],
                business_id=existing.get("business_id"),
                duplicate=True,
            )

        now = datetime.now(timezone.utc)
        record = {
            **key,
            "kind": event.kind.value,
            "raw_type": event.raw_type,
            "status": BillingEventStatus.PROCESSING.value,
            "business_id": None,
            "received_at": now,
            "processed_at": None,
            "error": None,
            "reason": None,
            "raw_minimal": _raw_minimal(event),
        }
        if existing:
            # Only one delivery may take over a FAILED or abandoned row
            claimed = await db.billing_events.find_one_and_update(
                {
                    **key,
                    "$or": [
                        {"status": BillingEventStatus.FAILED.value},
                        {
                            "status": BillingEventStatus.PROCESSING.value,
                            "received_at": {"$lt": now - timedelta(minutes=STALE_PROCESSING_MINUTES)},
                        },
                    ],
                },
                {"$set": record},
                return_document=ReturnDocument.AFTER,
            )
            if claimed is None:
                logger.info(
                    "WEBHOOK_DUPLICATE provider=%s event_id=%s status=%s (in flight)",
                    provider, event.event_id, existing.get("status"),
                )
                return WebhookOutcome(
                    event_id=event.event_id,
                    status=existing.get("status") or BillingEventStatus.PROCESSING.value,
                    business_id=existing.get("business_id"),
                    duplicate=True,
                )
        else:
            try:
                await db.billing_events.insert_one(record)
            except DuplicateKeyError:
                logger.info("WEBHOOK_DUPLICATE provider=%s event_id=%s (insert race)", provider, event.event_id)
                return WebhookOutcome(event_id=event.event_id, status="PROCESSING", duplicate=True)

        try:
            outcome = await self._reconcile(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED provider=%s event_id=%s kind=%s error=%s",
                provider, event.event_id, event.kind.value, str(e),
            )
            await db.billing_events.update_one(key, {"$set": {
                "status": BillingEventStatus.FAILED.value,
                "processed_at": datetime.now(timezone.utc),
                "error": str(e),
            }})
            await create_audit_log(
                action=AuditAction.BILLING_EVENT_FAILED,
                actor_role="SYSTEM",
                actor_id=provider,
                resource_type="billing_event",
                resource_id=event.event_id,
                metadata={"kind": event.kind.value, "raw_type": event.raw_type, "error": str(e)},
            )
            raise

        await db.billing_events.update_one(key, {"$set": {
            "status": outcome.status,
            "business_id": outcome.business_id,
            "reason": outcome.reason,
            "processed_at": datetime.now(timezone.utc),
        }})
        return outcome

    # =========================================================================
    # Correlation
    # =========================================================================

    async def resolve_subscription(self, event: BillingEvent) -> Tuple[Optional[str], Optional[Dict]]:
        """
        Find the account an event belongs to.

        Returns (business_id, subscription_doc). business_id None means the
        event could not be correlated at all.
        """
        db = database.get_db()

        if event.business_id:
            doc = await db.subscriptions.find_one({"business_id": event.business_id}, {"_id": 0})
            if doc:
                return event.business_id, doc
            business = await db.businesses.find_one({"business_id": event.business_id}, {"_id": 0})
            if business:
                return event.business_id, None

        if event.user_id:
            business = await db.businesses.find_one({"user_id": event.user_id}, {"_id": 0})
            if business:
                business_id = business["business_id"]
                doc = await db.subscriptions.find_one({"business_id": business_id}, {"_id": 0})
                return business_id, doc

        fields = CORRELATION_FIELDS.get(event.provider, {})
        for event_attr in ("subscription_id", "order_id"):
            value = getattr(event, event_attr)
            if value and event_attr in fields:
                doc = await db.subscriptions.find_one({fields[event_attr]: value}, {"_id": 0})
                if doc:
                    return doc["business_id"], doc

        return None, None

    # =========================================================================
    # Reconcile
    # =========================================================================

    async def _reconcile(self, event: BillingEvent) -> WebhookOutcome:
        business_id, doc = await self.resolve_subscription(event)

        if business_id is None:
            logger.error(
                "WEBHOOK_UNMATCHED provider=%s event_id=%s kind=%s user_id=%s business_id=%s order_id=%s subscription_id=%s",
                event.provider.value, event.event_id, event.kind.value,
                event.user_id, event.business_id, event.order_id, event.subscription_id,
            )
            await create_audit_log(
                action=AuditAction.BILLING_EVENT_UNMATCHED,
                actor_role="SYSTEM",
                actor_id=event.provider.value,
                resource_type="billing_event",
                resource_id=event.event_id,
                metadata=_raw_minimal(event),
            )
            return WebhookOutcome(
                event_id=event.event_id,
                status=BillingEventStatus.UNMATCHED.value,
                reason="account_not_found",
            )

        current = Subscription.model_validate(doc) if doc else None
        transition = await self.apply_and_persist(current, event, actor_role="SYSTEM", actor_id=event.provider.value)

        if not transition.applied:
            logger.info(
                "WEBHOOK_IGNORED provider=%s event_id=%s kind=%s business_id=%s reason=%s",
                event.provider.value, event.event_id, event.kind.value, business_id, transition.reason,
            )
            return WebhookOutcome(
                event_id=event.event_id,
                status=BillingEventStatus.IGNORED.value,
                business_id=business_id,
                reason=transition.reason,
            )

        logger.info(
            "WEBHOOK_PROCESSED_OK provider=%s event_id=%s kind=%s business_id=%s plan=%s status=%s",
            event.provider.value, event.event_id, event.kind.value, business_id,
            transition.subscription.plan.value, transition.subscription.status.value,
        )
        return WebhookOutcome(
            event_id=event.event_id,
            status=BillingEventStatus.PROCESSED.value,
            business_id=business_id,
            reason=transition.reason,
        )

    async def apply_and_persist(
        self,
        current: Optional[Subscription],
        event: BillingEvent,
        actor_role: Optional[str] = None,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Transition:
        """Reduce, write the changed fields, run side effects, audit. Shared by webhooks, manage and admin."""
        transition = apply_billing_event(current, event)
        if not transition.applied:
            return transition

        db = database.get_db()
        after = transition.subscription
        changes = changed_fields(current, after)
        if changes:
            query = {"business_id": current.business_id}
            if event.kind == BillingEventKind.PACK_PURCHASED:
                # Guard against a concurrent delivery crediting the same order
                query["applied_pack_orders"] = {"$ne": pack_order_key(event)}
            elif event.kind == BillingEventKind.PACK_REFUNDED:
                query["applied_pack_orders"] = pack_order_key(event)
            result = await db.subscriptions.update_one(query, {"$set": changes})
            if result.matched_count == 0 and event.kind in PACK_GUARD_REASONS:
                return Transition(subscription=current, applied=False, reason=PACK_GUARD_REASONS[event.kind])

        await self._run_side_effects(after, transition, event)

        action = (
            AuditAction.SUBSCRIPTION_OVERRIDE
            if event.kind == BillingEventKind.ADMIN_OVERRIDE
            else AuditAction.BILLING_EVENT_APPLIED
        )
        await create_audit_log(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            business_id=current.business_id,
            resource_type="subscription",
            resource_id=current.business_id,
            before_state=current.to_document(),
            after_state=after.to_document(),
            metadata={
                "provider": event.provider.value,
                "event_id": event.event_id,
                "kind": event.kind.value,
                "raw_type": event.raw_type,
            },
            ip_address=ip_address,
        )
        return transition

    async def _run_side_effects(self, subscription: Subscription, transition: Transition, event: BillingEvent):
        for effect in transition.side_effects:
            if effect.kind != EFFECT_NOTIFY_PAYMENT:
                logger.info(
                    "BILLING_SIDE_EFFECT kind=%s business_id=%s payload=%s",
                    effect.kind, subscription.business_id, effect.payload,
                )
                continue
            try:
                name, email = await self._customer_identity(subscription.business_id, effect.payload)
                await operator_notifier.notify_payment(
                    customer_name=name,
                    customer_email=email,
                    plan_name=effect.payload.get("plan_name") or effect.payload.get("plan") or "",
                    amount=effect.payload.get("amount"),
                    currency=effect.payload.get("currency"),
                    period=effect.payload.get("period"),
                )
            except Exception as e:
                # Notification is informational; the state change already landed
                logger.error(
                    "BILLING_NOTIFY_FAILED business_id=%s event_id=%s error=%s",
                    subscription.business_id, event.event_id, e,
                )

    async def _customer_identity(self, business_id: str, payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        db = database.get_db()
        business = await db.businesses.find_one({"business_id": business_id}, {"_id": 0})
        user = None
        if business and business.get("user_id"):
            user = await db.users.find_one({"user_id": business["user_id"]}, {"_id": 0})
        name = (user or {}).get("name")
        email = (user or {}).get("email") or payload.get("customer_email")
        return name, email

    # =========================================================================
    # Operator override
    # =========================================================================

    async def apply_admin_override(
        self,
        business_id: str,
        override: Dict[str, Any],
        admin_id: Optional[str],
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[Optional[Subscription], Transition]:
        """Force plan / status / expiry / limit. Returns (before, transition)."""
        db = database.get_db()
        doc = await db.subscriptions.find_one({"business_id": business_id}, {"_id": 0})
        current = Subscription.model_validate(doc) if doc else None

        event = BillingEvent(
            provider=BillingProvider.ADMIN,
            event_id=f"admin-{uuid.uuid4()}",
            kind=BillingEventKind.ADMIN_OVERRIDE,
            raw_type=reason or "admin_override",
            business_id=business_id,
            override=override,
        )
        transition = await self.apply_and_persist(
            current, event,
            actor_role=UserRole.ROLE_ADMIN.value,
            actor_id=admin_id,
            ip_address=ip_address,
        )
        logger.info(
            "SUBSCRIPTION_OVERRIDE business_id=%s admin_id=%s applied=%s reason=%s",
            business_id, admin_id, transition.applied, transition.reason,
        )
        return current, transition


# Singleton instance
billing_webhook_service = BillingWebhookService()
