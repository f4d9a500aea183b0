"""
Audit trail for quotes and billing invoices.

Every workflow transition (signature, payment, bank transfer, email, webhook
failure) leaves one entry in audit_logs keyed by the document id.
"""
from database import database
from models import AuditLog, AuditAction
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


def changed_fields(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Fields whose value differs between two states: {"status": {"from": "sent", "to": "accepted"}}."""
    before = before or {}
    after = after or {}
    return {
        key: {"from": before.get(key), "to": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> str:
    """Record one audit entry and return its id.

    actor_role is "client" (validation page), "owner" (issuer actions) or
    "system" (webhooks, retry worker). When both states are given the changed
    fields are added to metadata under "changes". Audit failures are logged
    and never fail the calling transition, which is already committed.
    """
    try:
        extra = dict(metadata or {})
        if before_state and after_state:
            changes = changed_fields(before_state, after_state)
            if changes:
                extra["changes"] = changes

        entry = AuditLog(
            action=action,
            actor_role=actor_role,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=extra or None,
            ip_address=ip_address,
        )
        doc = entry.model_dump()
        doc["action"] = action.value
        if isinstance(doc["timestamp"], datetime):
            doc["timestamp"] = doc["timestamp"].isoformat()

        await database.get_db().audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} resource={resource_type}:{resource_id}")
        return entry.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log {action.value} for {resource_type}:{resource_id}: {e}")
        return ""


async def get_audit_logs_for_document(document_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Audit timeline of one quote or invoice, newest first."""
    try:
        cursor = database.get_db().audit_logs.find(
            {"resource_id": document_id},
            {"_id": 0},
        ).sort("timestamp", -1).limit(limit)
        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for document {document_id}: {e}")
        return []
