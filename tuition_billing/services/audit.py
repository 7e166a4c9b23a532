import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from tuition_billing.models.audit_log_model import AuditLog


def jsonable(value: Any) -> Any:
    """Make ORM-ish values safe for a JSON column."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [jsonable(v) for v in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def record_audit(
        db: Session,
        *,
        entity: str,
        entity_id,
        action: str,
        actor_user_id: Optional[uuid.UUID],
        diff: Optional[dict] = None,
) -> AuditLog:
    row = AuditLog(
        entity=entity,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff=jsonable(diff or {}),
    )
    db.add(row)
    return row
