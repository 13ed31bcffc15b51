"""Automation action executors.

Each executor takes the action params and one account snapshot and returns an
ActionResult. Exceptions never escape execute_action: a failure becomes
ActionResult(success=False) and is recorded like any other execution.

Placeholders for send_email / notify_admin: {{name}}, {{email}}, {{business}}, {{plan}}.
"""
import html
import logging
from datetime import datetime, timedelta
from typing import Any, Dict

from database import database
from models import ActionResult, AutomationAction
from services.automation_triggers import AccountSnapshot
from services.email_service import email_service, render_placeholders
from services.operator_notifier import operator_notifier
from services.plan_registry import plan_registry

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_SUBJECT = "A message from Staffix"
DEFAULT_EMAIL_TEMPLATE = "Hello, {{name}}!"
DEFAULT_ADMIN_MESSAGE = "Automation fired"
DEFAULT_EXTEND_DAYS = 7
DEFAULT_ADD_MESSAGES = 100


def _placeholder_model(account: AccountSnapshot) -> Dict[str, Any]:
    sub = account.subscription
    return {
        "name": account.name or "there",
        "email": account.email or "",
        "business": account.business_name or "",
        "plan": sub.plan.value if sub else "",
    }


def _positive_int(params: Dict[str, Any], key: str, default: int) -> int:
    try:
        value = int(float((params or {}).get(key)))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


async def send_email(params: Dict[str, Any], account: AccountSnapshot, now: datetime) -> ActionResult:
    if not account.email:
        return ActionResult(success=False, error="User has no email")
    model = _placeholder_model(account)
    subject = render_placeholders(str(params.get("subject") or DEFAULT_EMAIL_SUBJECT), model)
    body = render_placeholders(str(params.get("template") or DEFAULT_EMAIL_TEMPLATE), model)

    message_log = await email_service.send_email(
        recipient=account.email,
        subject=subject,
        text_body=body,
        business_id=account.business_id,
        tag="automation",
    )
    if message_log.status != "sent":
        return ActionResult(success=False, error=message_log.error_message or "Email not sent")
    return ActionResult(success=True, details={"message_id": message_log.message_id, "subject": subject})


async def notify_admin(params: Dict[str, Any], account: AccountSnapshot, now: datetime) -> ActionResult:
    model = {k: html.escape(str(v)) for k, v in _placeholder_model(account).items()}
    message = render_placeholders(str(params.get("message") or DEFAULT_ADMIN_MESSAGE), model)
    text = f"🤖 <b>Automation</b>\n{message}\n👤 {model['name']} ({model['email']})"

    delivered = await operator_notifier.send(text)
    if not delivered:
        return ActionResult(success=False, error="Operator notification not delivered")
    return ActionResult(success=True, details={"message": message})


async def extend_trial(params: Dict[str, Any], account: AccountSnapshot, now: datetime) -> ActionResult:
    sub = account.subscription
    if sub is None:
        return ActionResult(success=False, error="No subscription")
    days = _positive_int(params, "days", DEFAULT_EXTEND_DAYS)
    # Never shorten: an already-later expiry is kept
    new_expiry = max(sub.expires_at, now + timedelta(days=days))

    db = database.get_db()
    await db.subscriptions.update_one(
        {"business_id": sub.business_id},
        {"$set": {"expires_at": new_expiry, "updated_at": now}}
    )
    return ActionResult(success=True, details={"days": days, "new_expiry": new_expiry.isoformat()})


async def add_messages(params: Dict[str, Any], account: AccountSnapshot, now: datetime) -> ActionResult:
    sub = account.subscription
    if sub is None:
        return ActionResult(success=False, error="No subscription")
    count = _positive_int(params, "count", DEFAULT_ADD_MESSAGES)
    if plan_registry.is_unlimited(sub.messages_limit):
        return ActionResult(success=True, details={"added": 0, "unlimited": True})

    db = database.get_db()
    await db.subscriptions.update_one(
        {"business_id": sub.business_id},
        {"$inc": {"messages_limit": count}, "$set": {"updated_at": now}}
    )
    return ActionResult(success=True, details={"added": count})


EXECUTORS = {
    AutomationAction.SEND_EMAIL.value: send_email,
    AutomationAction.NOTIFY_ADMIN.value: notify_admin,
    AutomationAction.EXTEND_TRIAL.value: extend_trial,
    AutomationAction.ADD_MESSAGES.value: add_messages,
}


async def execute_action(action, params: Dict[str, Any], account: AccountSnapshot, now: datetime) -> ActionResult:
    key = action.value if isinstance(action, AutomationAction) else str(action)
    executor = EXECUTORS.get(key)
    if executor is None:
        return ActionResult(success=False, error=f"Unknown action: {key}")
    try:
        return await executor(params or {}, account, now)
    except Exception as e:
        logger.error(f"AUTOMATION_ACTION_ERROR action={key} user_id={account.user_id} error={e}")
        return ActionResult(success=False, error=str(e) or type(e).__name__)
