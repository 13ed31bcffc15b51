"""
Webhook endpoints: authenticity gates before any database work, acknowledgement semantics.
"""
import hashlib
import hmac
import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from urllib.parse import urlencode

from models import PlanId, Subscription, utc_now
from services.signature_verification import paypro_expected_hash, paypro_expected_signature

LEMON_SECRET = "route-lemon-secret"
IPN_SECRET = "route-ipn-secret"
VALIDATION_KEY = "route-validation-key"
PAYPRO_IP = "198.199.123.239"


@pytest.fixture(autouse=True)
def provider_secrets(monkeypatch):
    monkeypatch.setenv("LEMONSQUEEZY_WEBHOOK_SECRET", LEMON_SECRET)
    monkeypatch.setenv("PAYPRO_IPN_SECRET_KEY", IPN_SECRET)
    monkeypatch.setenv("PAYPRO_VALIDATION_KEY", VALIDATION_KEY)
    monkeypatch.delenv("PAYPRO_TEST_MODE", raising=False)
    monkeypatch.delenv("PAYPRO_ALLOWED_IPS", raising=False)


@pytest.fixture(autouse=True)
def quiet_notifier():
    with patch("services.billing_webhook_service.operator_notifier.notify_payment", AsyncMock(return_value=True)):
        yield


async def _seed(db):
    await db.businesses.insert_one({"business_id": "biz-1", "user_id": "user-1", "name": "Owner Co"})
    await db.users.insert_one({"user_id": "user-1", "email": "owner@example.com", "name": "Owner"})
    await db.subscriptions.insert_one(
        Subscription(business_id="biz-1", expires_at=utc_now() + timedelta(days=4)).to_document()
    )


def _sign(body: bytes, secret: str = LEMON_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _lemon_body(user_id="user-1", webhook_id="wh-1") -> bytes:
    payload = {
        "meta": {
            "event_name": "subscription_created",
            "webhook_id": webhook_id,
            "custom_data": {"user_id": user_id},
        },
        "data": {
            "type": "subscriptions",
            "id": "77",
            "attributes": {"order_id": 4001, "customer_id": 12, "user_email": "owner@example.com"},
        },
    }
    return json.dumps(payload).encode()


def _paypro_body(**overrides) -> bytes:
    fields = {
        "IPN_TYPE_ID": "1",
        "IPN_TYPE_NAME": "OrderCharged",
        "ORDER_ID": "555001",
        "ORDER_STATUS": "Processed",
        "ORDER_TOTAL_AMOUNT": "50.00",
        "ORDER_CURRENCY_CODE": "USD",
        "CUSTOMER_EMAIL": "owner@example.com",
        "SUBSCRIPTION_ID": "3001",
        "TEST_MODE": "0",
        "ORDER_CUSTOM_FIELDS": "x-userId=user-1,x-planId=pro,x-billingPeriod=monthly",
    }
    fields.update(overrides)
    fields.setdefault("HASH", paypro_expected_hash(fields["ORDER_ID"], IPN_SECRET))
    fields.setdefault("SIGNATURE", paypro_expected_signature(
        order_id=fields["ORDER_ID"],
        order_status=fields["ORDER_STATUS"],
        order_total_amount=fields["ORDER_TOTAL_AMOUNT"],
        customer_email=fields["CUSTOMER_EMAIL"],
        validation_key=VALIDATION_KEY,
        test_mode=fields["TEST_MODE"] == "1",
        ipn_type_name=fields["IPN_TYPE_NAME"],
    ))
    return urlencode(fields).encode()


FORM = {"Content-Type": "application/x-www-form-urlencoded"}


class TestLemonSqueezyWebhook:
    def test_missing_signature_rejected(self, client, fake_db):
        response = client.post("/api/webhooks/lemonsqueezy", content=_lemon_body())
        assert response.status_code == 401
        assert fake_db.billing_events.docs == []

    def test_wrong_secret_rejected(self, client, fake_db):
        body = _lemon_body()
        response = client.post(
            "/api/webhooks/lemonsqueezy", content=body, headers={"X-Signature": _sign(body, "other")}
        )
        assert response.status_code == 401
        assert fake_db.billing_events.docs == []

    def test_signed_garbage_is_bad_request(self, client, fake_db):
        body = b"{not json"
        response = client.post("/api/webhooks/lemonsqueezy", content=body, headers={"X-Signature": _sign(body)})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON"

    def test_signed_non_envelope_is_bad_request(self, client, fake_db):
        body = json.dumps({"hello": "world"}).encode()
        response = client.post("/api/webhooks/lemonsqueezy", content=body, headers={"X-Signature": _sign(body)})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_valid_event_applied(self, client, fake_db):
        await _seed(fake_db)
        body = _lemon_body()
        response = client.post("/api/webhooks/lemonsqueezy", content=body, headers={"X-Signature": _sign(body)})
        assert response.status_code == 200
        assert response.json() == {"received": True}

        sub = await fake_db.subscriptions.find_one({"business_id": "biz-1"})
        assert sub["lemonsqueezy_subscription_id"] == "77"
        assert sub["lemonsqueezy_order_id"] == "4001"
        row = fake_db.billing_events.docs[0]
        assert row["provider"] == "lemonsqueezy"
        assert row["event_id"] == "wh-1"
        assert row["status"] == "PROCESSED"

    @pytest.mark.asyncio
    async def test_unmatched_event_acknowledged(self, client, fake_db):
        await _seed(fake_db)
        before = await fake_db.subscriptions.find_one({"business_id": "biz-1"})
        body = _lemon_body(user_id="nobody")
        response = client.post("/api/webhooks/lemonsqueezy", content=body, headers={"X-Signature": _sign(body)})
        assert response.status_code == 200
        assert await fake_db.subscriptions.find_one({"business_id": "biz-1"}) == before
        assert fake_db.billing_events.docs[0]["status"] == "UNMATCHED"

    def test_processing_error_is_server_error(self, client, fake_db):
        body = _lemon_body()
        with patch("routes.webhooks.billing_webhook_service.process_event", AsyncMock(side_effect=RuntimeError("boom"))):
            response = client.post("/api/webhooks/lemonsqueezy", content=body, headers={"X-Signature": _sign(body)})
        assert response.status_code == 500


class TestPayProWebhook:
    def test_unknown_source_ip_forbidden(self, client, fake_db):
        response = client.post("/api/webhooks/paypro", content=_paypro_body(), headers=FORM)
        assert response.status_code == 403
        assert fake_db.billing_events.docs == []

    def test_spoofed_forwarded_for_forbidden(self, client, fake_db):
        headers = {**FORM, "X-Forwarded-For": f"{PAYPRO_IP}, 6.6.6.6"}
        response = client.post("/api/webhooks/paypro", content=_paypro_body(), headers=headers)
        assert response.status_code == 403
        assert fake_db.billing_events.docs == []

    def test_bad_hash_rejected(self, client, fake_db):
        body = _paypro_body(HASH="0" * 32)
        response = client.post("/api/webhooks/paypro", content=body, headers={**FORM, "X-Forwarded-For": PAYPRO_IP})
        assert response.status_code == 400
        assert fake_db.billing_events.docs == []

    def test_tampered_amount_rejected(self, client, fake_db):
        signed = dict(item.split("=", 1) for item in _paypro_body().decode().split("&"))
        signed["ORDER_TOTAL_AMOUNT"] = "1.00"
        body = "&".join(f"{k}={v}" for k, v in signed.items()).encode()
        response = client.post("/api/webhooks/paypro", content=body, headers={**FORM, "X-Forwarded-For": PAYPRO_IP})
        assert response.status_code == 400

    def test_test_ipn_rejected_in_live_mode(self, client, fake_db):
        body = _paypro_body(TEST_MODE="1", HASH=paypro_expected_hash("555001", IPN_SECRET, test_mode=True))
        response = client.post("/api/webhooks/paypro", content=body, headers={**FORM, "X-Forwarded-For": PAYPRO_IP})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_valid_ipn_applied(self, client, fake_db):
        await _seed(fake_db)
        response = client.post(
            "/api/webhooks/paypro", content=_paypro_body(), headers={**FORM, "X-Forwarded-For": PAYPRO_IP}
        )
        assert response.status_code == 200
        assert response.text == "OK"

        sub = await fake_db.subscriptions.find_one({"business_id": "biz-1"})
        assert sub["plan"] == PlanId.PRO.value
        assert sub["messages_limit"] == 1000
        assert sub["paypro_subscription_id"] == "3001"
        assert sub["paypro_order_id"] == "555001"

    @pytest.mark.asyncio
    async def test_redelivery_acknowledged_once(self, client, fake_db):
        await _seed(fake_db)
        body = _paypro_body()
        headers = {**FORM, "X-Forwarded-For": PAYPRO_IP}
        assert client.post("/api/webhooks/paypro", content=body, headers=headers).status_code == 200
        await fake_db.subscriptions.update_one({"business_id": "biz-1"}, {"$set": {"messages_used": 12}})

        assert client.post("/api/webhooks/paypro", content=body, headers=headers).status_code == 200
        sub = await fake_db.subscriptions.find_one({"business_id": "biz-1"})
        assert sub["messages_used"] == 12
        assert len(fake_db.billing_events.docs) == 1

    def test_test_mode_accepts_any_source(self, client, fake_db, monkeypatch):
        monkeypatch.setenv("PAYPRO_TEST_MODE", "true")
        body = _paypro_body(TEST_MODE="1", HASH=paypro_expected_hash("555001", IPN_SECRET, test_mode=True))
        response = client.post("/api/webhooks/paypro", content=body, headers=FORM)
        assert response.status_code == 200
