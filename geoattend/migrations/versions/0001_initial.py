"""Initial geofence attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

geofence_type = postgresql.ENUM(
    "OFFICE",
    "SITE",
    "WAREHOUSE",
    "CUSTOM",
    name="geofence_type",
    create_type=False,
)
geofence_status = postgresql.ENUM(
    "ACTIVE",
    "INACTIVE",
    "ARCHIVED",
    name="geofence_status",
    create_type=False,
)
attendance_status = postgresql.ENUM(
    "CHECKED_OUT",
    "CHECKED_IN",
    "ON_BREAK",
    name="attendance_status",
    create_type=False,
)
attendance_event_type = postgresql.ENUM(
    "CHECK_IN",
    "CHECK_OUT",
    "BREAK_START",
    "BREAK_END",
    name="attendance_event_type",
    create_type=False,
)
attendance_event_source = postgresql.ENUM(
    "AUTO",
    "MANUAL",
    name="attendance_event_source",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "ADMIN",
    "EMPLOYEE",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)

_ENUMS = (
    geofence_type,
    geofence_status,
    attendance_status,
    attendance_event_type,
    attendance_event_source,
    audit_actor_type,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("ix_employees_organization_id", "employees", ["organization_id"])

    op.create_table(
        "geofences",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("code", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("type", geofence_type, nullable=False),
        sa.Column("center_lat", sa.Float(), nullable=False),
        sa.Column("center_lon", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Float(), nullable=False),
        sa.Column("schedule_enabled", sa.Boolean(), nullable=False),
        sa.Column("work_days", postgresql.JSONB(), nullable=False),
        sa.Column("work_start", sa.String(length=5), nullable=True),
        sa.Column("work_end", sa.String(length=5), nullable=True),
        sa.Column("entry_notification", sa.Boolean(), nullable=False),
        sa.Column("exit_notification", sa.Boolean(), nullable=False),
        sa.Column("auto_check_in", sa.Boolean(), nullable=False),
        sa.Column("grace_period_minutes", sa.Integer(), nullable=False),
        sa.Column("status", geofence_status, nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("organization_id", "code", name="uq_geofences_organization_code"),
    )
    op.create_index("ix_geofences_organization_id", "geofences", ["organization_id"])
    op.create_index("ix_geofences_organization_status", "geofences", ["organization_id", "status"])
    op.create_index("ix_geofences_center", "geofences", ["center_lat", "center_lon"])

    op.create_table(
        "geofence_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("geofence_id", sa.String(length=36), nullable=False),
        sa.Column("employee_id", sa.String(length=64), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_by", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["geofence_id"], ["geofences.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "geofence_id",
            "employee_id",
            name="uq_geofence_assignments_geofence_employee",
        ),
    )
    op.create_index("ix_geofence_assignments_geofence_id", "geofence_assignments", ["geofence_id"])
    op.create_index("ix_geofence_assignments_employee_id", "geofence_assignments", ["employee_id"])

    op.create_table(
        "employee_attendance_states",
        sa.Column("employee_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("current_status", attendance_status, nullable=False),
        sa.Column("auto_check_in_enabled", sa.Boolean(), nullable=False),
        sa.Column("last_check_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_check_in_geofence_id", sa.String(length=36), nullable=True),
        sa.Column("last_check_in_lat", sa.Float(), nullable=True),
        sa.Column("last_check_in_lon", sa.Float(), nullable=True),
        sa.Column("last_check_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_check_out_geofence_id", sa.String(length=36), nullable=True),
        sa.Column("last_check_out_lat", sa.Float(), nullable=True),
        sa.Column("last_check_out_lon", sa.Float(), nullable=True),
        sa.Column("break_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_transition_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_lat", sa.Float(), nullable=True),
        sa.Column("last_seen_lon", sa.Float(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_employee_attendance_states_organization_id",
        "employee_attendance_states",
        ["organization_id"],
    )

    op.create_table(
        "attendance_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("employee_id", sa.String(length=64), nullable=False),
        sa.Column("geofence_id", sa.String(length=36), nullable=False),
        sa.Column("type", attendance_event_type, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lon", sa.Float(), nullable=True),
        sa.Column("is_on_time", sa.Boolean(), nullable=True),
        sa.Column("late_minutes", sa.Integer(), nullable=False),
        sa.Column("total_hours", sa.Float(), nullable=True),
        sa.Column("overtime_hours", sa.Float(), nullable=True),
        sa.Column("early_departure", sa.Boolean(), nullable=True),
        sa.Column("break_minutes", sa.Integer(), nullable=True),
        sa.Column("source", attendance_event_source, nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("flags", postgresql.JSONB(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["geofence_id"], ["geofences.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_attendance_events_employee_ts", "attendance_events", ["employee_id", "ts_utc"])
    op.create_index("ix_attendance_events_organization_ts", "attendance_events", ["organization_id", "ts_utc"])
    op.create_index("ix_attendance_events_geofence_ts", "attendance_events", ["geofence_id", "ts_utc"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("organization_id", sa.String(length=64), nullable=True),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", postgresql.JSONB(), nullable=False),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])
    op.create_index("ix_audit_logs_organization_id", "audit_logs", ["organization_id"])

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=True),
        sa.Column("employee_id", sa.String(length=64), nullable=True),
        sa.Column("job_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_notification_jobs_organization_id", "notification_jobs", ["organization_id"])
    op.create_index("ix_notification_jobs_employee_id", "notification_jobs", ["employee_id"])
    op.create_index("ix_notification_jobs_scheduled_at_utc", "notification_jobs", ["scheduled_at_utc"])
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"])


def downgrade() -> None:
    op.drop_table("notification_jobs")
    op.drop_table("audit_logs")
    op.drop_table("attendance_events")
    op.drop_table("employee_attendance_states")
    op.drop_table("geofence_assignments")
    op.drop_table("geofences")
    op.drop_table("employees")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
