"""Admin automation routes.

Admin (JWT, ROLE_ADMIN):
- GET   /api/admin/automations                    - list definitions
- POST  /api/admin/automations                    - create a definition
- PATCH /api/admin/automations/{automation_id}    - rename, retune or toggle
- GET   /api/admin/automations/{automation_id}/executions - recent executions

Cron (Authorization: Bearer <CRON_SECRET>):
- GET|POST /api/cron/admin-automations            - run one automation tick
"""
from fastapi import APIRouter, HTTPException, Request, Depends, status, Query
from pydantic import BaseModel
from typing import Optional, Dict, Any
from database import database
from middleware import admin_route_guard, require_cron_secret
from models import AuditAction, AutomationAction, AutomationDefinition, AutomationTrigger, UserRole
from utils.audit import create_audit_log
import job_runner
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/automations", tags=["admin-automations"], dependencies=[Depends(admin_route_guard)])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])


class AutomationCreateRequest(BaseModel):
    name: str
    trigger: AutomationTrigger
    trigger_params: Dict[str, Any] = {}
    action: AutomationAction
    action_params: Dict[str, Any] = {}
    is_active: bool = True


class AutomationUpdateRequest(BaseModel):
    name: Optional[str] = None
    trigger_params: Optional[Dict[str, Any]] = None
    action_params: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


@router.get("")
async def list_automations(request: Request):
    db = database.get_db()
    items = await db.automation_definitions.find({}, {"_id": 0}).sort("created_at", -1).to_list(500)
    return {"automations": items, "total": len(items)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_automation(body: AutomationCreateRequest, request: Request):
    """Create an automation definition. Trigger and action kinds are validated by the model."""
    user = await admin_route_guard(request)
    definition = AutomationDefinition(
        name=body.name,
        trigger=body.trigger,
        trigger_params=body.trigger_params,
        action=body.action,
        action_params=body.action_params,
        is_active=body.is_active,
        created_by=user.get("user_id"),
    )
    doc = definition.model_dump(mode="json")
    doc["created_at"] = definition.created_at

    db = database.get_db()
    await db.automation_definitions.insert_one(doc)
    doc.pop("_id", None)

    await create_audit_log(
        action=AuditAction.AUTOMATION_CREATED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user.get("user_id"),
        resource_type="automation",
        resource_id=definition.automation_id,
        after_state={k: v for k, v in doc.items() if k != "created_at"},
        ip_address=request.client.host if request.client else None,
    )
    logger.info(
        f"AUTOMATION_CREATED automation_id={definition.automation_id} "
        f"trigger={definition.trigger.value} action={definition.action.value}"
    )
    return doc


@router.patch("/{automation_id}")
async def update_automation(automation_id: str, body: AutomationUpdateRequest, request: Request):
    user = await admin_route_guard(request)
    db = database.get_db()

    before = await db.automation_definitions.find_one({"automation_id": automation_id}, {"_id": 0})
    if not before:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation not found")

    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")

    await db.automation_definitions.update_one({"automation_id": automation_id}, {"$set": updates})
    after = {**before, **updates}

    await create_audit_log(
        action=AuditAction.AUTOMATION_UPDATED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=user.get("user_id"),
        resource_type="automation",
        resource_id=automation_id,
        before_state=before,
        after_state=after,
        ip_address=request.client.host if request.client else None,
    )
    return after


@router.get("/{automation_id}/executions")
async def list_executions(
    automation_id: str,
    limit: int = Query(50, ge=1, le=500),
):
    db = database.get_db()
    items = await db.automation_executions.find(
        {"automation_id": automation_id}, {"_id": 0}
    ).sort("created_at", -1).limit(limit).to_list(limit)
    return {"executions": items, "returned": len(items)}


@cron_router.api_route("/admin-automations", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def cron_admin_automations():
    """External scheduler entry point. A tick already in progress returns immediately."""
    return await job_runner.run_admin_automations()
