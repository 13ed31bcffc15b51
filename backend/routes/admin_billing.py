"""Admin Billing Routes - manual reconciliation.

Endpoints:
- GET  /api/admin/billing/events - billing event log, filterable by status/provider/business
- GET  /api/admin/billing/subscriptions/{business_id} - subscription with audit timeline
- POST /api/admin/billing/subscriptions/{business_id}/override - force plan/status/expiry/limit

RULES:
1. Provider webhooks are the billing authority; overrides are for repair only.
2. Every override goes through the state machine and is audit-logged with a reason.
"""
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, HTTPException, Request, status, Depends, Query
from pydantic import BaseModel, Field
from database import database
from middleware import admin_route_guard
from models import BillingEventStatus, BillingProvider, PlanId, SubscriptionStatus, to_document
from services.billing_webhook_service import billing_webhook_service
from utils.audit import get_audit_logs_for_resource

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"], dependencies=[Depends(admin_route_guard)])


# =============================================================================
# Request Models
# =============================================================================

class OverrideRequest(BaseModel):
    """Fields to force. At least one is required; a plan without a limit takes the plan quota."""
    plan: Optional[PlanId] = None
    status: Optional[SubscriptionStatus] = None
    expires_at: Optional[datetime] = None
    messages_limit: Optional[int] = Field(default=None, ge=0)
    messages_used: Optional[int] = Field(default=None, ge=0)
    reason: str = Field(..., min_length=3)


# =============================================================================
# Event Log
# =============================================================================

@router.get("/events")
async def list_billing_events(
    status_filter: Optional[BillingEventStatus] = Query(None, alias="status"),
    provider: Optional[BillingProvider] = Query(None),
    business_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    skip: int = Query(0, ge=0),
):
    """Unmatched and failed events are the manual reconciliation queue."""
    db = database.get_db()
    query = {}
    if status_filter:
        query["status"] = status_filter.value
    if provider:
        query["provider"] = provider.value
    if business_id:
        query["business_id"] = business_id

    total = await db.billing_events.count_documents(query)
    items = await db.billing_events.find(query, {"_id": 0}).sort(
        "received_at", -1
    ).skip(skip).limit(limit).to_list(limit)
    return {
        "events": items,
        "total": total,
        "returned": len(items),
        "has_more": skip + len(items) < total,
    }


# =============================================================================
# Subscriptions
# =============================================================================

@router.get("/subscriptions/{business_id}")
async def get_billing_snapshot(business_id: str):
    db = database.get_db()
    subscription = await db.subscriptions.find_one({"business_id": business_id}, {"_id": 0})
    if not subscription:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    timeline = await get_audit_logs_for_resource("subscription", business_id, limit=50)
    return {"subscription": subscription, "audit_timeline": timeline}


@router.post("/subscriptions/{business_id}/override")
async def override_subscription(business_id: str, body: OverrideRequest, request: Request):
    admin = await admin_route_guard(request)
    override = body.model_dump(exclude_none=True, exclude={"reason"})
    if not override:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to override")

    before, transition = await billing_webhook_service.apply_admin_override(
        business_id,
        override,
        admin_id=admin.get("user_id"),
        reason=body.reason,
        ip_address=request.client.host if request.client else None,
    )
    if before is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")

    return {
        "success": True,
        "applied": transition.applied,
        "reason": transition.reason,
        "subscription": to_document(transition.subscription),
    }
