"""
Subscription state machine: pure reducer over normalized billing events.
Covers idempotence for every kind, cancellation grace, yearly charge, pack guard, orphan rule.
"""
from datetime import datetime, timezone, timedelta

import pytest

from models import (
    BillingEvent, BillingEventKind, BillingPeriod, BillingProvider,
    PlanId, Subscription, SubscriptionStatus,
)
from services.subscription_state_machine import (
    EFFECT_CORRELATION_CLEARED,
    EFFECT_GRANT_MESSAGES,
    EFFECT_NOTIFY_PAYMENT,
    EFFECT_RESET_MESSAGES_USED,
    apply_billing_event,
    changed_fields,
    pack_order_key,
)

OCCURRED = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)
SUB_ID = "sub_1001"


def _subscription(**overrides):
    data = {
        "business_id": "biz-1",
        "plan": PlanId.PRO,
        "status": SubscriptionStatus.ACTIVE,
        "messages_used": 420,
        "messages_limit": 1000,
        "expires_at": datetime(2025, 3, 20, tzinfo=timezone.utc),
        "billing_period": BillingPeriod.MONTHLY,
        "paypro_subscription_id": SUB_ID,
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 2, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return Subscription(**data)


def _event(kind, **overrides):
    data = {
        "provider": BillingProvider.PAYPRO,
        "event_id": f"evt-{kind.value}",
        "kind": kind,
        "subscription_id": SUB_ID,
        "occurred_at": OCCURRED,
    }
    data.update(overrides)
    return BillingEvent(**data)


ALL_KIND_EVENTS = [
    _event(BillingEventKind.CHARGED, plan=PlanId.BUSINESS, order_id="ord-1", amount="100.00", currency="USD"),
    _event(BillingEventKind.RENEWED),
    _event(BillingEventKind.RESUMED),
    _event(BillingEventKind.PLAN_CHANGED, plan=PlanId.STARTER, provider_status=SubscriptionStatus.CANCELLED),
    _event(BillingEventKind.CANCELLED),
    _event(BillingEventKind.SUSPENDED),
    _event(BillingEventKind.TERMINATED),
    _event(BillingEventKind.REFUNDED),
    _event(BillingEventKind.PAYMENT_FAILED, terminal_failure=True),
    _event(BillingEventKind.PAYMENT_FAILED, event_id="evt-soft-fail"),
    _event(BillingEventKind.PACK_PURCHASED, pack_id="pack_500", pack_messages=500, order_id="ord-pack"),
    _event(BillingEventKind.PACK_REFUNDED, pack_id="pack_500", pack_messages=500, order_id="ord-pack",
           subscription_id=None),
    _event(BillingEventKind.ADMIN_OVERRIDE, provider=BillingProvider.ADMIN, subscription_id=None,
           override={"plan": PlanId.ENTERPRISE}),
    _event(BillingEventKind.INFORMATIONAL),
]


class TestIdempotence:
    """apply(apply(s, e), e) == apply(s, e) for every kind."""

    @pytest.mark.parametrize("event", ALL_KIND_EVENTS, ids=lambda e: e.event_id)
    def test_reapplying_changes_nothing(self, event):
        once = apply_billing_event(_subscription(), event).subscription
        twice = apply_billing_event(once, event).subscription
        assert twice == once
        assert changed_fields(once, twice) == {}


class TestCharged:
    def test_yearly_pro_charge(self):
        current = _subscription(plan=PlanId.TRIAL, messages_limit=200, messages_used=150,
                                paypro_subscription_id=None)
        event = _event(
            BillingEventKind.CHARGED, plan=PlanId.PRO, billing_period=BillingPeriod.YEARLY,
            order_id="ord-9", customer_id="cus-9", subscription_id="sub_new",
        )
        transition = apply_billing_event(current, event)
        sub = transition.subscription

        assert transition.applied
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.plan == PlanId.PRO
        assert sub.messages_limit == 1000
        assert sub.messages_used == 0
        assert sub.billing_period == BillingPeriod.YEARLY
        assert sub.expires_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert (sub.expires_at - OCCURRED) == timedelta(days=365)
        assert sub.paypro_subscription_id == "sub_new"
        assert sub.paypro_order_id == "ord-9"
        assert sub.paypro_customer_id == "cus-9"

        kinds = [e.kind for e in transition.side_effects]
        assert kinds == [EFFECT_RESET_MESSAGES_USED, EFFECT_NOTIFY_PAYMENT]
        payment = transition.side_effects[1].payload
        assert payment["plan"] == "pro"
        assert payment["period"] == "yearly"
        assert payment["amount"] == "480"

    def test_provider_expiry_wins_over_computed(self):
        renews = datetime(2025, 4, 3, tzinfo=timezone.utc)
        sub = apply_billing_event(_subscription(), _event(BillingEventKind.CHARGED, expires_at=renews)).subscription
        assert sub.expires_at == renews

    def test_unknown_plan_keeps_current_plan(self):
        sub = apply_billing_event(_subscription(plan=PlanId.BUSINESS), _event(BillingEventKind.CHARGED)).subscription
        assert sub.plan == PlanId.BUSINESS
        assert sub.messages_limit == 3000

    def test_charge_for_other_subscription_is_not_orphaned(self):
        transition = apply_billing_event(_subscription(), _event(BillingEventKind.CHARGED, subscription_id="sub_other"))
        assert transition.applied


class TestCancellationAndFailures:
    def test_cancel_keeps_expiry_and_limit(self):
        current = _subscription()
        sub = apply_billing_event(current, _event(BillingEventKind.CANCELLED)).subscription
        assert sub.status == SubscriptionStatus.CANCELLED
        assert sub.expires_at == current.expires_at
        assert sub.messages_limit == current.messages_limit
        assert sub.messages_used == current.messages_used
        assert sub.plan == current.plan

    def test_soft_payment_failure_is_noop(self):
        transition = apply_billing_event(_subscription(), _event(BillingEventKind.PAYMENT_FAILED))
        assert not transition.applied
        assert transition.reason == "payment_retry_pending"

    def test_terminal_payment_failure_sets_past_due(self):
        sub = apply_billing_event(
            _subscription(), _event(BillingEventKind.PAYMENT_FAILED, terminal_failure=True)
        ).subscription
        assert sub.status == SubscriptionStatus.PAST_DUE

    def test_terminate_clears_correlation(self):
        transition = apply_billing_event(_subscription(), _event(BillingEventKind.TERMINATED))
        assert transition.subscription.status == SubscriptionStatus.EXPIRED
        assert transition.subscription.paypro_subscription_id is None
        assert transition.side_effects[0].kind == EFFECT_CORRELATION_CLEARED

    def test_refund_downgrades_to_trial_floor(self):
        sub = apply_billing_event(_subscription(), _event(BillingEventKind.REFUNDED)).subscription
        assert sub.plan == PlanId.TRIAL
        assert sub.messages_limit == 200
        assert sub.status == SubscriptionStatus.EXPIRED

    def test_plan_change_with_pending_cancel(self):
        sub = apply_billing_event(
            _subscription(), _event(BillingEventKind.PLAN_CHANGED, plan=PlanId.BUSINESS, provider_status=SubscriptionStatus.CANCELLED)
        ).subscription
        assert sub.plan == PlanId.BUSINESS
        assert sub.messages_limit == 3000
        assert sub.status == SubscriptionStatus.CANCELLED

    def test_plan_change_keeps_past_due_after_failed_payment(self):
        failed = apply_billing_event(
            _subscription(), _event(BillingEventKind.PAYMENT_FAILED, terminal_failure=True)
        ).subscription
        updated = apply_billing_event(
            failed, _event(BillingEventKind.PLAN_CHANGED, event_id="evt-updated", provider_status=SubscriptionStatus.PAST_DUE)
        ).subscription
        assert updated.status == SubscriptionStatus.PAST_DUE
        assert updated.plan == PlanId.PRO

    def test_plan_change_without_provider_status_keeps_status(self):
        suspended = _subscription(status=SubscriptionStatus.SUSPENDED)
        sub = apply_billing_event(suspended, _event(BillingEventKind.PLAN_CHANGED, plan=PlanId.BUSINESS)).subscription
        assert sub.plan == PlanId.BUSINESS
        assert sub.status == SubscriptionStatus.SUSPENDED


class TestOrphans:
    def test_event_for_other_subscription_is_ignored(self):
        current = _subscription()
        transition = apply_billing_event(current, _event(BillingEventKind.CANCELLED, subscription_id="sub_old"))
        assert not transition.applied
        assert transition.reason == "orphaned"
        assert transition.subscription == current

    def test_event_after_termination_is_ignored(self):
        terminated = apply_billing_event(_subscription(), _event(BillingEventKind.TERMINATED)).subscription
        late = apply_billing_event(terminated, _event(BillingEventKind.RENEWED, event_id="evt-late"))
        assert not late.applied
        assert late.reason == "orphaned"

    def test_other_provider_field_is_checked(self):
        current = _subscription(paypro_subscription_id=None, lemonsqueezy_subscription_id="ls-1")
        event = _event(BillingEventKind.CANCELLED, provider=BillingProvider.LEMONSQUEEZY, subscription_id="ls-2")
        assert apply_billing_event(current, event).reason == "orphaned"

    def test_no_subscription_is_noop(self):
        transition = apply_billing_event(None, _event(BillingEventKind.CHARGED))
        assert not transition.applied
        assert transition.subscription is None
        assert transition.reason == "no_subscription"


class TestMessagePacks:
    def test_pack_adds_messages_once(self):
        event = _event(BillingEventKind.PACK_PURCHASED, pack_id="pack_500", pack_messages=500, order_id="ord-p1")
        first = apply_billing_event(_subscription(), event)
        assert first.applied
        assert first.subscription.messages_limit == 1500
        assert pack_order_key(event) in first.subscription.applied_pack_orders
        assert [e.kind for e in first.side_effects] == [EFFECT_GRANT_MESSAGES, EFFECT_NOTIFY_PAYMENT]

        second = apply_billing_event(first.subscription, event)
        assert not second.applied
        assert second.reason == "pack_already_applied"
        assert second.subscription.messages_limit == 1500

    def test_pack_on_unlimited_plan_stays_unlimited(self):
        current = _subscription(plan=PlanId.ENTERPRISE, messages_limit=999999)
        event = _event(BillingEventKind.PACK_PURCHASED, pack_id="pack_100", pack_messages=100, order_id="ord-p2")
        assert apply_billing_event(current, event).subscription.messages_limit == 999999

    def test_pack_without_count_is_noop(self):
        event = _event(BillingEventKind.PACK_PURCHASED, pack_id="pack_x", order_id="ord-p3")
        assert apply_billing_event(_subscription(), event).reason == "pack_unknown"

    def test_pack_refund_takes_back_only_the_pack(self):
        current = _subscription(messages_limit=1500, applied_pack_orders=["paypro:9999"])
        event = _event(BillingEventKind.PACK_REFUNDED, pack_id="pack_500", pack_messages=500,
                       order_id="9999", subscription_id=None)
        transition = apply_billing_event(current, event)
        sub = transition.subscription

        assert transition.applied
        assert sub.messages_limit == 1000
        assert sub.applied_pack_orders == []
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.plan == PlanId.PRO
        assert sub.paypro_subscription_id == SUB_ID
        assert sub.expires_at == current.expires_at

        again = apply_billing_event(sub, event)
        assert not again.applied
        assert again.reason == "pack_not_applied"

    def test_refund_of_unknown_pack_order_is_noop(self):
        event = _event(BillingEventKind.PACK_REFUNDED, pack_id="pack_500", pack_messages=500,
                       order_id="9999", subscription_id=None)
        transition = apply_billing_event(_subscription(), event)
        assert not transition.applied
        assert transition.subscription.messages_limit == 1000


class TestAdminOverride:
    def test_plan_override_takes_plan_quota(self):
        event = _event(BillingEventKind.ADMIN_OVERRIDE, provider=BillingProvider.ADMIN, subscription_id=None,
                       override={"plan": PlanId.BUSINESS})
        sub = apply_billing_event(_subscription(), event).subscription
        assert sub.plan == PlanId.BUSINESS
        assert sub.messages_limit == 3000

    def test_explicit_limit_wins(self):
        event = _event(BillingEventKind.ADMIN_OVERRIDE, provider=BillingProvider.ADMIN, subscription_id=None,
                       override={"plan": PlanId.BUSINESS, "messages_limit": 5000})
        assert apply_billing_event(_subscription(), event).subscription.messages_limit == 5000

    def test_empty_override_is_noop(self):
        event = _event(BillingEventKind.ADMIN_OVERRIDE, provider=BillingProvider.ADMIN, subscription_id=None,
                       override={"paypro_subscription_id": "x"})
        assert apply_billing_event(_subscription(), event).reason == "empty_override"


def test_changed_fields_uses_plain_values():
    current = _subscription()
    after = apply_billing_event(current, _event(BillingEventKind.CANCELLED)).subscription
    changes = changed_fields(current, after)
    assert changes == {"status": "cancelled", "updated_at": OCCURRED}
