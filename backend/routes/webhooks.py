"""Webhook Routes - billing provider notifications.

POST /api/webhooks/paypro       - PayPro Global IPN (form-encoded)
POST /api/webhooks/lemonsqueezy - Lemon Squeezy webhook (JSON, X-Signature)

Authenticity is checked before any database access. Only authenticity failures
and unexpected processing errors produce a non-2xx response: an event that
cannot be matched to an account is recorded as UNMATCHED and acknowledged, so
the provider does not retry it forever.
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
from fastapi.responses import PlainTextResponse
from services.billing_webhook_service import billing_webhook_service
from services import paypro_service as paypro
from services import lemonsqueezy_service as lemonsqueezy
from services.signature_verification import (
    SignatureVerificationError,
    is_paypro_ip_allowed,
    verify_hmac_sha256,
    verify_paypro_ipn,
)
import hashlib
import logging
import json
import os

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _body_digest(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()[:16]


def _check_paypro_authenticity(request: Request, ipn: paypro.PayProIPN):
    """Raise SignatureVerificationError unless the IPN is from PayPro and correctly signed."""
    test_mode_enabled = paypro.is_test_mode_enabled()
    client_ip = paypro.client_ip_from_headers(
        request.headers.get("X-Forwarded-For"),
        request.client.host if request.client else None,
    )
    if not is_paypro_ip_allowed(client_ip, paypro.get_allowed_ips(), test_mode=test_mode_enabled):
        raise SignatureVerificationError(f"ip_not_allowed ip={client_ip}", status.HTTP_403_FORBIDDEN)

    if ipn.test_mode and not test_mode_enabled:
        raise SignatureVerificationError("test_ipn_in_live_mode")

    if not verify_paypro_ipn(
        ipn.form,
        os.getenv("PAYPRO_IPN_SECRET_KEY"),
        os.getenv("PAYPRO_VALIDATION_KEY"),
    ):
        raise SignatureVerificationError("invalid_hash_or_signature")


@router.post("/paypro")
async def paypro_webhook(request: Request):
    """Handle PayPro Global IPN. Responds with plain-text OK once accepted."""
    raw_body = await request.body()
    ipn = paypro.parse_ipn(raw_body)

    try:
        _check_paypro_authenticity(request, ipn)
    except SignatureVerificationError as e:
        logger.warning(
            f"PAYPRO_IPN_REJECTED reason={e.reason} order_id={ipn.order_id} "
            f"ipn_type={ipn.ipn_type_id} body_sha256={_body_digest(raw_body)}"
        )
        raise HTTPException(status_code=e.status_code, detail="Invalid IPN")

    try:
        event = paypro.to_billing_event(ipn, raw_body)
        outcome = await billing_webhook_service.process_event(event)
    except Exception as e:
        logger.exception(f"PayPro IPN processing error: order_id={ipn.order_id} error={e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Processing error")

    logger.info(
        f"PAYPRO_IPN_ACCEPTED order_id={ipn.order_id} ipn_type={ipn.ipn_type_id} "
        f"status={outcome.status} duplicate={outcome.duplicate}"
    )
    return PlainTextResponse("OK")


@router.post("/lemonsqueezy")
async def lemonsqueezy_webhook(
    request: Request,
    x_signature: str = Header(None, alias="X-Signature"),
):
    """Handle Lemon Squeezy webhooks. Signature is HMAC-SHA256 of the raw body."""
    raw_body = await request.body()

    if not verify_hmac_sha256(raw_body, x_signature, os.getenv("LEMONSQUEEZY_WEBHOOK_SECRET")):
        logger.warning(
            f"LEMONSQUEEZY_SIGNATURE_INVALID present={bool(x_signature)} body_sha256={_body_digest(raw_body)}"
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.error(f"LEMONSQUEEZY_BAD_JSON body_sha256={_body_digest(raw_body)}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    try:
        event = lemonsqueezy.to_billing_event(payload, raw_body)
    except lemonsqueezy.LemonSqueezyPayloadError as e:
        logger.error(f"LEMONSQUEEZY_BAD_PAYLOAD error={e} body_sha256={_body_digest(raw_body)}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    try:
        await billing_webhook_service.process_event(event)
    except Exception as e:
        logger.exception(f"Lemon Squeezy webhook processing error: event={event.raw_type} error={e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Processing error")

    return {"received": True}
