from database import database
from models import AuditLog, AuditAction, UserRole
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

# Bookkeeping fields that change on every write and would drown the real diff
DIFF_IGNORED_FIELDS = frozenset({"updated_at"})


def _plain(value: Any) -> Any:
    """Enums to values and datetimes to ISO strings, recursively."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Field-level diff of two snapshots.

    Shape: {"added": {field: new}, "removed": {field: old}, "changed": {field: {"from", "to"}}},
    with empty sections left out. updated_at is not reported.
    """
    before = before or {}
    after = after or {}
    added, removed, changed = {}, {}, {}

    for key in sorted(set(before) | set(after)):
        if key in DIFF_IGNORED_FIELDS:
            continue
        if key not in before:
            added[key] = after[key]
        elif key not in after:
            removed[key] = before[key]
        elif before[key] != after[key]:
            changed[key] = {"from": before[key], "to": after[key]}

    sections = {"added": added, "removed": removed, "changed": changed}
    return {name: section for name, section in sections.items() if section}


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    business_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    ip_address: Optional[str] = None,
    auto_diff: bool = True
) -> str:
    """Write one audit row; returns its audit_id, or "" when the write failed.

    Webhook-driven changes use actor_role "SYSTEM" and the provider name as actor_id.
    Never raises: an audit failure must not fail the billing operation.
    """
    before_state = _plain(before_state) if before_state else None
    after_state = _plain(after_state) if after_state else None
    details = _plain(metadata) if metadata else {}

    if auto_diff and before_state and after_state:
        diff = calculate_diff(before_state, after_state)
        if diff:
            details["diff"] = diff
            details["changes_count"] = sum(len(section) for section in diff.values())

    if isinstance(actor_role, UserRole):
        actor_role = actor_role.value

    try:
        entry = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            business_id=business_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=details or None,
            reason_code=reason_code,
            ip_address=ip_address
        )
        doc = entry.model_dump()
        doc["action"] = entry.action.value

        await database.get_db().audit_logs.insert_one(doc)
    except Exception as e:
        logger.error(f"AUDIT_WRITE_FAILED action={getattr(action, 'value', action)} resource_id={resource_id} error={e}")
        return ""

    logger.info(
        f"AUDIT action={entry.action.value} resource={resource_type}:{resource_id} "
        f"changes={details.get('changes_count', 0)}"
    )
    return entry.audit_id


async def get_audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Audit timeline of one resource, newest first. Empty on read failure."""
    try:
        return await database.get_db().audit_logs.find(
            {"resource_type": resource_type, "resource_id": resource_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit).to_list(length=limit)
    except Exception as e:
        logger.error(f"AUDIT_READ_FAILED resource={resource_type}:{resource_id} error={e}")
        return []
