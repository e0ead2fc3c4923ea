from database import database
from models import AuditAction
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging
import uuid

logger = logging.getLogger(__name__)

async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    device_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Append an audit entry for a staging, entitlement or ingestion event.

    Args:
        action: The audit action type
        actor_id: Authenticated user the event belongs to, if any
        device_id: Device whose staged capture is involved, if any
        resource_type: Type of resource (e.g., 'scan', 'staged_capture')
        resource_id: ID of the specific resource
        metadata: Additional metadata (never image payloads or tokens)
    """
    try:
        db = database.get_db()
        audit_id = str(uuid.uuid4())
        doc = {
            "audit_id": audit_id,
            "action": action.value,
            "actor_id": actor_id,
            "device_id": device_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "metadata": metadata or None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}")
        return audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

