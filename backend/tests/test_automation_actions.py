"""
Automation action executors: placeholders, extend-trial never shortens, unlimited plans, failures as results.
"""
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from models import AutomationAction, PlanId, Subscription
from services.automation_actions import execute_action
from services.automation_triggers import AccountSnapshot

NOW = datetime(2025, 8, 10, 12, 0, tzinfo=timezone.utc)


def _account(expires_in=timedelta(days=1), plan=PlanId.TRIAL, limit=200, email="dana@example.com"):
    return AccountSnapshot(
        user_id="user-dana",
        email=email,
        name="Dana",
        business_id="biz-dana",
        business_name="Dana's Bakery",
        subscription=Subscription(
            business_id="biz-dana", plan=plan, messages_limit=limit, expires_at=NOW + expires_in,
        ),
    )


@pytest.mark.asyncio
class TestSendEmail:
    async def test_placeholders_rendered(self):
        sent = MagicMock(status="sent", message_id="m-1", error_message=None)
        with patch("services.automation_actions.email_service.send_email", AsyncMock(return_value=sent)) as send:
            result = await execute_action(
                AutomationAction.SEND_EMAIL,
                {"subject": "{{name}}, your {{plan}} ends", "template": "Hi {{name}} from {{business}} <{{email}}>"},
                _account(), NOW,
            )
        assert result.success
        kwargs = send.call_args.kwargs
        assert kwargs["recipient"] == "dana@example.com"
        assert kwargs["subject"] == "Dana, your trial ends"
        assert kwargs["text_body"] == "Hi Dana from Dana's Bakery <dana@example.com>"
        assert kwargs["tag"] == "automation"

    async def test_failed_delivery_is_failure(self):
        failed = MagicMock(status="failed", message_id="m-2", error_message="Postmark down")
        with patch("services.automation_actions.email_service.send_email", AsyncMock(return_value=failed)):
            result = await execute_action(AutomationAction.SEND_EMAIL, {}, _account(), NOW)
        assert not result.success
        assert result.error == "Postmark down"

    async def test_no_email(self):
        result = await execute_action(AutomationAction.SEND_EMAIL, {}, _account(email=None), NOW)
        assert not result.success


@pytest.mark.asyncio
class TestNotifyAdmin:
    async def test_values_escaped(self):
        account = _account()
        account.name = "<Dana>"
        with patch("services.automation_actions.operator_notifier.send", AsyncMock(return_value=True)) as send:
            result = await execute_action(AutomationAction.NOTIFY_ADMIN, {"message": "{{name}} is close"}, account, NOW)
        assert result.success
        text = send.call_args.args[0]
        assert "&lt;Dana&gt; is close" in text
        assert "<Dana>" not in text


@pytest.mark.asyncio
class TestQuotaActions:
    async def test_extend_trial_never_shortens(self, fake_db):
        account = _account(expires_in=timedelta(days=30))
        await fake_db.subscriptions.insert_one(account.subscription.to_document())

        result = await execute_action(AutomationAction.EXTEND_TRIAL, {"days": 7}, account, NOW)
        assert result.success
        doc = await fake_db.subscriptions.find_one({"business_id": "biz-dana"})
        assert doc["expires_at"] == NOW + timedelta(days=30)

    async def test_extend_trial_default_days(self, fake_db):
        account = _account(expires_in=timedelta(days=-3))
        await fake_db.subscriptions.insert_one(account.subscription.to_document())

        await execute_action(AutomationAction.EXTEND_TRIAL, {"days": "lots"}, account, NOW)
        doc = await fake_db.subscriptions.find_one({"business_id": "biz-dana"})
        assert doc["expires_at"] == NOW + timedelta(days=7)

    async def test_add_messages_increments(self, fake_db):
        account = _account(limit=200)
        await fake_db.subscriptions.insert_one(account.subscription.to_document())

        result = await execute_action(AutomationAction.ADD_MESSAGES, {"count": 50}, account, NOW)
        assert result.success
        doc = await fake_db.subscriptions.find_one({"business_id": "biz-dana"})
        assert doc["messages_limit"] == 250

    async def test_add_messages_unlimited_untouched(self, fake_db):
        account = _account(plan=PlanId.ENTERPRISE, limit=999999)
        await fake_db.subscriptions.insert_one(account.subscription.to_document())

        result = await execute_action(AutomationAction.ADD_MESSAGES, {"count": 50}, account, NOW)
        assert result.success
        assert result.details["added"] == 0
        doc = await fake_db.subscriptions.find_one({"business_id": "biz-dana"})
        assert doc["messages_limit"] == 999999

    async def test_no_subscription(self):
        account = _account()
        account.subscription = None
        result = await execute_action(AutomationAction.ADD_MESSAGES, {}, account, NOW)
        assert not result.success


@pytest.mark.asyncio
class TestDispatch:
    async def test_unknown_action(self):
        result = await execute_action("launch_rocket", {}, _account(), NOW)
        assert not result.success
        assert "Unknown action" in result.error

    async def test_exception_becomes_failure(self):
        boom = AsyncMock(side_effect=RuntimeError("db gone"))
        with patch("services.automation_actions.email_service.send_email", boom):
            result = await execute_action(AutomationAction.SEND_EMAIL, {}, _account(), NOW)
        assert not result.success
        assert result.error == "db gone"
