"""Subscription self-service routes.

GET  /api/subscription/manage - current plan, usage and days left
POST /api/subscription/manage - {"action": "cancel" | "resume"}
"""
from fastapi import APIRouter, HTTPException, Request, Depends, status
from pydantic import BaseModel
from middleware import require_auth
from services.provider_errors import ProviderAPIError
from services.subscription_management import (
    SubscriptionNotFoundError,
    SubscriptionNotManageableError,
    get_subscription_overview,
    manage_subscription,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class ManageRequest(BaseModel):
    action: str


@router.get("/manage")
async def get_subscription(current_user: dict = Depends(require_auth)):
    overview = await get_subscription_overview(current_user["user_id"])
    if overview is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return overview


@router.post("/manage")
async def post_manage(
    body: ManageRequest,
    request: Request,
    current_user: dict = Depends(require_auth),
):
    """Cancel or resume via the billing provider, then mirror the change locally."""
    user_id = current_user["user_id"]
    try:
        message = await manage_subscription(
            user_id,
            body.action,
            ip_address=request.client.host if request.client else None,
        )
    except SubscriptionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    except SubscriptionNotManageableError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ProviderAPIError as e:
        logger.error(f"SUBSCRIPTION_MANAGE_PROVIDER_ERROR user_id={user_id} action={body.action} error={e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Billing provider request failed")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"success": True, "message": message}
