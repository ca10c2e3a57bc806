"""
Audit Logging
Plan lifecycle and scheduler decisions are written to audit_logs in the same
session as the change they describe, and mirrored to the 'audit' logger.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditLog

logger = logging.getLogger(__name__)
audit_log = logging.getLogger("audit")


class AuditAction:
    PLAN_CREATED = "plan_created"
    PLAN_AMOUNT_UPDATED = "plan_amount_updated"
    PLAN_FREQUENCY_UPDATED = "plan_frequency_updated"
    PLAN_PAUSED = "plan_paused"
    PLAN_RESUMED = "plan_resumed"
    PLAN_CANCELLED = "plan_cancelled"
    PLAN_VAULT_BOUND = "plan_vault_bound"
    PLAN_AUTO_PAUSED = "plan_auto_paused"
    PRECONDITION_FAILED = "execution_precondition_failed"
    UNKNOWN_CHAIN_EXECUTION = "unknown_chain_execution"


def record_audit(
    session: AsyncSession,
    action: str,
    resource: str,
    resource_id: Optional[Any] = None,
    user_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> AuditLog:
    """Add an audit row to the session; the caller commits"""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
    )
    if now is not None:
        entry.created_at = now
    session.add(entry)

    audit_log.info(
        json.dumps(
            {
                "timestamp": (now or datetime.utcnow()).isoformat(),
                "action": action,
                "resource": resource,
                "resource_id": entry.resource_id,
                "user_id": user_id,
                "details": details or {},
            },
            default=str,
        )
    )
    return entry
