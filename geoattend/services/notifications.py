from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from geoattend.models import NotificationJob

logger = logging.getLogger("geoattend.notifications")

JOB_STATUS_PENDING = "PENDING"

NOTIFICATION_TYPES = frozenset(
    {
        "geofence_entry",
        "geofence_exit",
        "late_check_in",
        "assigned_to_geofence",
        "removed_from_geofence",
        "break-start",
        "break-end",
    }
)


class OutboxNotifier:
    """Queues notifications as ``NotificationJob`` rows for a separate sender.

    Jobs are written in their own commit after the attendance transition has
    already been committed, so a failed enqueue never undoes attendance data.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def notify(self, employee_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        if event_type not in NOTIFICATION_TYPES:
            logger.warning("notification_type_unknown", extra={"event_type": event_type})
        now_utc = datetime.now(timezone.utc)
        job = NotificationJob(
            organization_id=payload.get("organization_id"),
            employee_id=employee_id,
            job_type=event_type,
            payload=dict(payload),
            scheduled_at_utc=now_utc,
            status=JOB_STATUS_PENDING,
            attempts=0,
            last_error=None,
            created_at=now_utc,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "notification_enqueued",
            extra={
                "job_id": job.id,
                "organization_id": job.organization_id,
                "employee_id": employee_id,
                "job_type": event_type,
            },
        )


def list_pending_jobs(db: Session, *, organization_id: str, limit: int = 100) -> list[NotificationJob]:
    stmt = (
        select(NotificationJob)
        .where(
            NotificationJob.organization_id == organization_id,
            NotificationJob.status == JOB_STATUS_PENDING,
        )
        .order_by(NotificationJob.scheduled_at_utc.asc(), NotificationJob.id.asc())
        .limit(limit)
    )
    return list(db.scalars(stmt).all())
