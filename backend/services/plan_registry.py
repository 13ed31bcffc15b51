"""Canonical Plan Registry - Single Source of Truth for all plan definitions.

This is the AUTHORITATIVE source for:
- Plan ids and message quotas
- Pricing (monthly + yearly)
- Message pack (one-time top-up) definitions
- PayPro product id / Lemon Squeezy variant id mappings
- Entitlement derived from subscription status

NON-NEGOTIABLE RULES:
1. Backend is authoritative - entitlement checks happen server-side
2. Payment providers are billing systems, not permission systems
3. Plan id -> quota lookup is pure and deterministic (no I/O)
4. Unknown plan ids fall back to the trial plan, never raise

Plan Structure:
- trial: 200 messages (trial length is set at signup)
- starter: 200 messages
- pro: 1000 messages
- business: 3000 messages
- enterprise: unlimited (sentinel 999999)
"""
import calendar
import os
import logging
from datetime import datetime
from typing import Dict, Optional, Any
from models import PlanId, BillingPeriod, SubscriptionStatus

logger = logging.getLogger(__name__)


UNLIMITED_MESSAGES = 999999
TRIAL_FLOOR_MESSAGES = 200


# ============================================================================
# PLAN DEFINITIONS - Complete plan configuration
# ============================================================================
PLAN_DEFINITIONS = {
    PlanId.TRIAL: {
        "id": "trial",
        "name": "Trial",
        "description": "14 days free - every Pro feature",
        "monthly_price": 0,
        "yearly_price": 0,
        "messages_limit": TRIAL_FLOOR_MESSAGES,
        "ai_employees_limit": 1,
        "automations": True,
        "is_trial": True,
    },
    PlanId.STARTER: {
        "id": "starter",
        "name": "Starter",
        "description": "For solo operators getting started",
        "monthly_price": 25,
        "yearly_price": 240,
        "messages_limit": 200,
        "ai_employees_limit": 1,
        "automations": False,
        "is_trial": False,
    },
    PlanId.PRO: {
        "id": "pro",
        "name": "Pro",
        "description": "For small and medium businesses",
        "monthly_price": 50,
        "yearly_price": 480,
        "messages_limit": 1000,
        "ai_employees_limit": 1,
        "automations": True,
        "is_trial": False,
    },
    PlanId.BUSINESS: {
        "id": "business",
        "name": "Business",
        "description": "For growing companies",
        "monthly_price": 100,
        "yearly_price": 960,
        "messages_limit": 3000,
        "ai_employees_limit": 2,
        "automations": True,
        "is_trial": False,
    },
    PlanId.ENTERPRISE: {
        "id": "enterprise",
        "name": "Enterprise",
        "description": "Unlimited messages and a personal manager",
        "monthly_price": 200,
        "yearly_price": 1920,
        "messages_limit": UNLIMITED_MESSAGES,
        "ai_employees_limit": 5,
        "automations": True,
        "is_trial": False,
    },
}


# ============================================================================
# MESSAGE PACKS - One-time quota top-ups
# ============================================================================
MESSAGE_PACKS = {
    "pack_100": {"id": "pack_100", "name": "100 messages", "messages": 100, "price": 5},
    "pack_500": {"id": "pack_500", "name": "500 messages", "messages": 500, "price": 20},
    "pack_1000": {"id": "pack_1000", "name": "1000 messages", "messages": 1000, "price": 35},
}


# Legacy / display aliases accepted from providers and custom fields
PLAN_ALIASES = {
    "free": PlanId.TRIAL,
    "trialing": PlanId.TRIAL,
    "basic": PlanId.STARTER,
    "professional": PlanId.PRO,
    "team": PlanId.BUSINESS,
    "unlimited": PlanId.ENTERPRISE,
}


# ============================================================================
# ENTITLEMENT - Which statuses keep feature access
# ============================================================================
# cancelled keeps access until expires_at (grace period); suspended is a hard stop
STATUSES_WITH_ENTITLEMENT = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.PAST_DUE.value,
})


def add_billing_period(start: datetime, period: BillingPeriod) -> datetime:
    """Advance by one calendar month or year, clamping the day (Jan 31 -> Feb 28)."""
    if period == BillingPeriod.YEARLY:
        year, month = start.year + 1, start.month
    else:
        year = start.year + (1 if start.month == 12 else 0)
        month = 1 if start.month == 12 else start.month + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip()


class PlanRegistryService:
    """Central service for all plan and entitlement lookups."""

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    def get_plan(self, plan_id) -> Dict[str, Any]:
        """Get complete plan definition (unknown -> trial)."""
        return PLAN_DEFINITIONS[self.resolve_plan_code(plan_id)].copy()

    def get_messages_limit(self, plan_id) -> int:
        """Message quota for a plan; stable across calls."""
        return self.get_plan(plan_id)["messages_limit"]

    def get_price(self, plan_id, period: BillingPeriod) -> int:
        plan = self.get_plan(plan_id)
        return plan["yearly_price"] if period == BillingPeriod.YEARLY else plan["monthly_price"]

    def is_unlimited(self, messages_limit: int) -> bool:
        return messages_limit >= UNLIMITED_MESSAGES

    def resolve_plan_code(self, code) -> PlanId:
        """Resolve a raw plan string (any case, legacy aliases) to PlanId."""
        if isinstance(code, PlanId):
            return code
        raw = (code or "").strip().lower()
        try:
            return PlanId(raw)
        except ValueError:
            return PLAN_ALIASES.get(raw, PlanId.TRIAL)

    def parse_plan_code(self, code) -> Optional[PlanId]:
        """Strict variant of resolve_plan_code: unknown -> None."""
        if isinstance(code, PlanId):
            return code
        raw = (code or "").strip().lower()
        if not raw:
            return None
        try:
            return PlanId(raw)
        except ValueError:
            return PLAN_ALIASES.get(raw)

    def parse_billing_period(self, raw: Optional[str]) -> Optional[BillingPeriod]:
        value = (raw or "").strip().lower()
        if value in ("yearly", "annual", "annually", "year"):
            return BillingPeriod.YEARLY
        if value in ("monthly", "month"):
            return BillingPeriod.MONTHLY
        return None

    # -------------------------------------------------------------------------
    # Message Packs
    # -------------------------------------------------------------------------

    def get_pack(self, pack_id: Optional[str]) -> Optional[Dict[str, Any]]:
        pack = MESSAGE_PACKS.get((pack_id or "").strip().lower())
        return pack.copy() if pack else None

    # -------------------------------------------------------------------------
    # Provider Product Mappings (configured via environment)
    # -------------------------------------------------------------------------

    def paypro_product_id(self, plan_id, period: BillingPeriod) -> str:
        plan = self.resolve_plan_code(plan_id)
        return _env(f"PAYPRO_PRODUCT_{plan.value.upper()}_{period.value.upper()}")

    def paypro_pack_product_id(self, pack_id: str) -> str:
        return _env(f"PAYPRO_PRODUCT_{pack_id.upper()}")

    def plan_from_paypro_product(self, product_id) -> Optional[tuple]:
        """Product id -> (PlanId, BillingPeriod); used when custom fields lack x-planId."""
        product = str(product_id or "").strip()
        if not product:
            return None
        for plan in PlanId:
            if plan == PlanId.TRIAL:
                continue
            for period in BillingPeriod:
                if self.paypro_product_id(plan, period) == product:
                    return plan, period
        return None

    def pack_from_paypro_product(self, product_id) -> Optional[Dict[str, Any]]:
        product = str(product_id or "").strip()
        if not product:
            return None
        for pack_id in MESSAGE_PACKS:
            if self.paypro_pack_product_id(pack_id) == product:
                return self.get_pack(pack_id)
        return None

    def lemonsqueezy_variant_id(self, plan_id, period: BillingPeriod) -> str:
        plan = self.resolve_plan_code(plan_id)
        return _env(f"LEMONSQUEEZY_{plan.value.upper()}_{period.value.upper()}_VARIANT_ID")

    def _lemonsqueezy_variant_table(self) -> Dict[str, tuple]:
        table = {}
        for plan in PlanId:
            if plan == PlanId.TRIAL:
                continue
            for period in BillingPeriod:
                variant = self.lemonsqueezy_variant_id(plan, period)
                if variant:
                    table[variant] = ("plan", plan, period)
        for pack_id in MESSAGE_PACKS:
            variant = _env(f"LEMONSQUEEZY_{pack_id.upper()}_VARIANT_ID")
            if variant:
                table[variant] = ("pack", pack_id, None)
        return table

    def plan_from_lemonsqueezy_variant(self, variant_id) -> Optional[tuple]:
        """Variant id -> (PlanId, BillingPeriod), or None for unknown/pack variants."""
        entry = self._lemonsqueezy_variant_table().get(str(variant_id or ""))
        if entry and entry[0] == "plan":
            return entry[1], entry[2]
        return None

    def pack_from_lemonsqueezy_variant(self, variant_id) -> Optional[Dict[str, Any]]:
        entry = self._lemonsqueezy_variant_table().get(str(variant_id or ""))
        if entry and entry[0] == "pack":
            return self.get_pack(entry[1])
        return None

    # -------------------------------------------------------------------------
    # Entitlement
    # -------------------------------------------------------------------------

    def has_entitlement(self, status: Optional[str], expires_at: Optional[datetime], now: datetime) -> bool:
        """
        True while the account may consume quota.
        cancelled keeps access until expiry; suspended/expired never do.
        """
        if not status or status not in STATUSES_WITH_ENTITLEMENT:
            return False
        if expires_at is None:
            return False
        return expires_at > now


# Singleton instance
plan_registry = PlanRegistryService()
