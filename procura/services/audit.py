"""
Audit trail helper: persists an AuditLog row in the caller's unit of work
and mirrors it to the audit log stream.
"""
from typing import Optional

from sqlalchemy.orm import Session

from procura.core.logging import log_audit_event
from procura.db.models import AuditLog


def record_audit(
    db: Session,
    org_id: int,
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    user_id: Optional[int] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=user_id,
        organization_id=org_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    db.add(entry)
    log_audit_event(org_id, action, entity_type, entity_id, user_id=user_id, details=details)
    return entry
