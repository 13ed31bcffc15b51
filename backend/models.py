from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value):
    """Mongo and ISO strings may yield naive datetimes; treat them as UTC."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_document(model: BaseModel) -> Dict[str, Any]:
    data = model.model_dump(mode="python")
    for key, value in data.items():
        if isinstance(value, Enum):
            data[key] = value.value
    return data

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class PlanId(str, Enum):
    TRIAL = "trial"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    PAST_DUE = "past_due"

class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

class BillingProvider(str, Enum):
    PAYPRO = "paypro"
    LEMONSQUEEZY = "lemonsqueezy"
    ADMIN = "admin"  # Manual override / manage actions, never a webhook source

class BillingEventKind(str, Enum):
    CHARGED = "charged"
    RENEWED = "renewed"
    RESUMED = "resumed"
    PLAN_CHANGED = "plan_changed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"
    REFUNDED = "refunded"
    PAYMENT_FAILED = "payment_failed"
    PACK_PURCHASED = "pack_purchased"
    PACK_REFUNDED = "pack_refunded"
    ADMIN_OVERRIDE = "admin_override"
    INFORMATIONAL = "informational"

class BillingEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    UNMATCHED = "UNMATCHED"  # No account could be correlated; manual reconciliation
    IGNORED = "IGNORED"      # Reducer no-op (orphaned, informational, no subscription)
    FAILED = "FAILED"

class AutomationTrigger(str, Enum):
    TRIAL_EXPIRING = "trial_expiring"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
    TRIAL_EXPIRED = "trial_expired"
    MESSAGES_LOW = "messages_low"
    USER_INACTIVE = "user_inactive"

class AutomationAction(str, Enum):
    SEND_EMAIL = "send_email"
    NOTIFY_ADMIN = "notify_admin"
    EXTEND_TRIAL = "extend_trial"
    ADD_MESSAGES = "add_messages"

class UserRole(str, Enum):
    ROLE_CLIENT = "ROLE_CLIENT"
    ROLE_ADMIN = "ROLE_ADMIN"

class AuditAction(str, Enum):
    # Billing
    BILLING_EVENT_APPLIED = "BILLING_EVENT_APPLIED"
    BILLING_EVENT_UNMATCHED = "BILLING_EVENT_UNMATCHED"
    BILLING_EVENT_FAILED = "BILLING_EVENT_FAILED"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_RESUME_REQUESTED = "SUBSCRIPTION_RESUME_REQUESTED"
    SUBSCRIPTION_OVERRIDE = "SUBSCRIPTION_OVERRIDE"

    # Automations
    AUTOMATION_CREATED = "AUTOMATION_CREATED"
    AUTOMATION_UPDATED = "AUTOMATION_UPDATED"

    # Email
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"

    # Admin Actions
    ADMIN_ACTION = "ADMIN_ACTION"

# ============================================================================
# SUBSCRIPTION
# ============================================================================

class Subscription(BaseModel):
    """Authoritative subscription record - one per business."""
    model_config = ConfigDict(extra="ignore")

    business_id: str
    plan: PlanId = PlanId.TRIAL
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    messages_used: int = 0
    messages_limit: int = 200
    expires_at: datetime
    billing_period: BillingPeriod = BillingPeriod.MONTHLY

    # PayPro Global correlation
    paypro_order_id: Optional[str] = None
    paypro_subscription_id: Optional[str] = None
    paypro_customer_id: Optional[str] = None

    # Lemon Squeezy correlation
    lemonsqueezy_order_id: Optional[str] = None
    lemonsqueezy_subscription_id: Optional[str] = None
    lemonsqueezy_customer_id: Optional[str] = None

    # "<provider>:<order_id>" keys of message packs already credited
    applied_pack_orders: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    def to_document(self) -> Dict[str, Any]:
        """Mongo form: enums as plain strings, datetimes kept as datetime."""
        return to_document(self)


class BillingEvent(BaseModel):
    """Provider-agnostic form of an inbound billing notification."""
    model_config = ConfigDict(extra="ignore")

    provider: BillingProvider
    event_id: str
    kind: BillingEventKind
    raw_type: str = ""

    # Correlation
    user_id: Optional[str] = None
    business_id: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None

    # Plan / pack reference
    plan: Optional[PlanId] = None
    billing_period: Optional[BillingPeriod] = None
    pack_id: Optional[str] = None
    pack_messages: Optional[int] = None

    expires_at: Optional[datetime] = None
    # Status reported by the provider alongside the event; None leaves it unchanged
    provider_status: Optional[SubscriptionStatus] = None
    terminal_failure: bool = False
    amount: Optional[str] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)

    # Only set for ADMIN_OVERRIDE
    override: Optional[Dict[str, Any]] = None

    @field_validator("expires_at", "occurred_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class SideEffect(BaseModel):
    """Descriptor emitted by the state machine; executed by the caller."""
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)

# ============================================================================
# AUTOMATIONS
# ============================================================================

class AutomationDefinition(BaseModel):
    """Operator-configured rule evaluated by the automation engine."""
    model_config = ConfigDict(extra="ignore")

    automation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    trigger: AutomationTrigger
    trigger_params: Dict[str, Any] = Field(default_factory=dict)
    action: AutomationAction
    action_params: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    created_by: Optional[str] = None


class AutomationExecution(BaseModel):
    """Append-only record of one firing of a definition for one user."""
    model_config = ConfigDict(extra="ignore")

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    automation_id: str
    user_id: str
    user_email: Optional[str] = None
    success: bool
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

# ============================================================================
# AUDIT / MESSAGING
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    business_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    postmark_message_id: Optional[str] = None
    business_id: Optional[str] = None
    recipient: EmailStr
    subject: str
    tag: Optional[str] = None
    status: str = "queued"
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
