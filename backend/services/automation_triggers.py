"""Automation trigger predicates.

Pure functions over an in-memory account snapshot; the engine loads the
snapshot once per tick and shares it across definitions.

Triggers:
- trial_expiring(days_before=3): trial expires within now+D +/- 12h
- subscription_expiring(days_before=3): paid plan expires within now+D +/- 12h
- trial_expired: trial expired within the last 24h
- messages_low(percentage=20): 0 <= remaining% <= P, limit > 0
- user_inactive(days_inactive=7): last activity older than now-N days
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from models import AutomationTrigger, PlanId, Subscription, ensure_utc

logger = logging.getLogger(__name__)

EXPIRY_WINDOW_HALF_WIDTH = timedelta(hours=12)
EXPIRED_LOOKBACK = timedelta(hours=24)

DEFAULT_DAYS_BEFORE = 3
DEFAULT_PERCENTAGE = 20
DEFAULT_DAYS_INACTIVE = 7


class AccountSnapshot(BaseModel):
    """One user with their (first) business and its subscription."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    business_id: Optional[str] = None
    business_name: Optional[str] = None
    subscription: Optional[Subscription] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", "last_active_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    def last_activity(self) -> Optional[datetime]:
        return self.last_active_at or self.updated_at or self.created_at


def _positive_number(params: Dict[str, Any], key: str, default: float) -> float:
    """Missing, zero, negative or non-numeric -> default."""
    try:
        value = float((params or {}).get(key))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _in_expiry_window(expires_at: datetime, days_before: float, now: datetime) -> bool:
    target = now + timedelta(days=days_before)
    return target - EXPIRY_WINDOW_HALF_WIDTH <= expires_at <= target + EXPIRY_WINDOW_HALF_WIDTH


def trial_expiring(account: AccountSnapshot, params: Dict[str, Any], now: datetime) -> bool:
    sub = account.subscription
    if sub is None or sub.plan != PlanId.TRIAL:
        return False
    return _in_expiry_window(sub.expires_at, _positive_number(params, "days_before", DEFAULT_DAYS_BEFORE), now)


def subscription_expiring(account: AccountSnapshot, params: Dict[str, Any], now: datetime) -> bool:
    sub = account.subscription
    if sub is None or sub.plan == PlanId.TRIAL:
        return False
    return _in_expiry_window(sub.expires_at, _positive_number(params, "days_before", DEFAULT_DAYS_BEFORE), now)


def trial_expired(account: AccountSnapshot, params: Dict[str, Any], now: datetime) -> bool:
    sub = account.subscription
    if sub is None or sub.plan != PlanId.TRIAL:
        return False
    return now - EXPIRED_LOOKBACK <= sub.expires_at < now


def messages_low(account: AccountSnapshot, params: Dict[str, Any], now: datetime) -> bool:
    sub = account.subscription
    if sub is None or sub.messages_limit <= 0:
        return False
    threshold = _positive_number(params, "percentage", DEFAULT_PERCENTAGE)
    remaining = (sub.messages_limit - sub.messages_used) / sub.messages_limit * 100
    return 0 <= remaining <= threshold


def user_inactive(account: AccountSnapshot, params: Dict[str, Any], now: datetime) -> bool:
    last_activity = account.last_activity()
    if last_activity is None:
        return False
    days = _positive_number(params, "days_inactive", DEFAULT_DAYS_INACTIVE)
    return last_activity < now - timedelta(days=days)


PREDICATES = {
    AutomationTrigger.TRIAL_EXPIRING.value: trial_expiring,
    AutomationTrigger.SUBSCRIPTION_EXPIRING.value: subscription_expiring,
    AutomationTrigger.TRIAL_EXPIRED.value: trial_expired,
    AutomationTrigger.MESSAGES_LOW.value: messages_low,
    AutomationTrigger.USER_INACTIVE.value: user_inactive,
}


def matching_accounts(
    trigger: str,
    params: Dict[str, Any],
    accounts: List[AccountSnapshot],
    now: datetime,
) -> List[AccountSnapshot]:
    """Accounts the trigger fires for. Unknown trigger -> none."""
    key = trigger.value if isinstance(trigger, AutomationTrigger) else trigger
    predicate = PREDICATES.get(key)
    if predicate is None:
        logger.warning(f"AUTOMATION_UNKNOWN_TRIGGER trigger={key}")
        return []
    return [account for account in accounts if predicate(account, params or {}, now)]
