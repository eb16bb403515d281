from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from geoattend.models import AuditActorType, AuditLog
from geoattend.services.tenancy import TenantContext

logger = logging.getLogger("geoattend.audit")


@dataclass(frozen=True)
class AuditOrigin:
    """Where an audited request came from."""

    ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


def record_audit(
    db: Session,
    context: TenantContext,
    *,
    actor_type: AuditActorType,
    action: str,
    organization_id: str,
    entity_type: str,
    entity_id: str,
    origin: AuditOrigin,
    details: dict[str, Any] | None = None,
) -> None:
    """Persist an audit row for a committed mutation.

    Runs after the mutation itself has been committed, so a failed write is
    rolled back and logged rather than turned into an error response.
    """
    details = dict(details or {})
    db.add(
        AuditLog(
            ts_utc=datetime.now(timezone.utc),
            organization_id=organization_id,
            actor_type=actor_type,
            actor_id=context.actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip=origin.ip,
            user_agent=origin.user_agent,
            success=True,
            details=details,
        )
    )
    log_fields = {
        "request_id": origin.request_id,
        "organization_id": organization_id,
        "action": action,
        "actor_type": actor_type,
        "actor_id": context.actor_id,
        "actor_role": context.role,
        "entity_type": entity_type,
        "entity_id": entity_id,
    }
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit_write_failed", extra=log_fields)
        return
    logger.info("audit_recorded", extra={**log_fields, "details": details})
