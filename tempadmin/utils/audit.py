"""Audit trail for privilege operations.

Audit events go to the dedicated ``tempadmin.audit`` logger as structured
records; where they are stored is up to the log handler configuration.
"""

from datetime import datetime, timezone
import logging
from typing import Optional

from tempadmin.models import AuditAction, AuditStatus

audit_logger = logging.getLogger("tempadmin.audit")


def log_audit_event(
    action: AuditAction,
    actor: str,
    status: AuditStatus = AuditStatus.success,
    request_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Standardized action type (AuditAction enum)
        actor: Who performed the action (requester identity, approver, "system")
        status: Operation status (success/failure/denied)
        request_id: Privilege request acted upon (if applicable)
        ip_address: Client address for HTTP/WebSocket originated actions
        metadata: Additional structured data about the operation
    """
    audit_entry = {
        "actor": actor,
        "action": action.value,
        "status": status.value,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    if request_id:
        audit_entry["request_id"] = request_id
    if ip_address:
        audit_entry["ip_address"] = ip_address
    if metadata:
        audit_entry["metadata"] = metadata

    level = logging.WARNING if status is not AuditStatus.success else logging.INFO
    try:
        audit_logger.log(level, f"audit.{action.value}", extra={"extra": audit_entry})
    except Exception as e:  # pragma: no cover
        # Never let audit logging break the main operation
        logging.getLogger("tempadmin").warning(f"Failed to log audit event: {e}")
