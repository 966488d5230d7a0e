"""Initial reminder engine schema."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20241104001"
down_revision = None
branch_labels = None
depends_on = None


appointment_status_enum = postgresql.ENUM(
    "SCHEDULED", "CONFIRMED", "CANCELLED", "COMPLETED", "NO_SHOW",
    name="appointment_status",
    create_type=False,
)
reminder_channel_enum = postgresql.ENUM(
    "SMS", "EMAIL", "VOICE", "APP", "WHATSAPP",
    name="reminder_channel",
    create_type=False,
)
reminder_status_enum = postgresql.ENUM(
    "PENDING", "DISPATCHING", "SENT", "DELIVERED", "READ", "RESPONDED", "FAILED",
    name="reminder_status",
    create_type=False,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    appointment_status_enum.create(bind, checkfirst=True)
    reminder_channel_enum.create(bind, checkfirst=True)
    reminder_status_enum.create(bind, checkfirst=True)

    op.create_table(
        "patients",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone_number", sa.String(length=32), nullable=True),
    )

    op.create_table(
        "doctors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("specialty", sa.String(length=255), nullable=True),
    )

    op.create_table(
        "appointments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("appointment_type", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            appointment_status_enum,
            nullable=False,
            server_default=sa.text("'SCHEDULED'"),
        ),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.CheckConstraint("end_time > start_time", name="ck_appointments_time_range"),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["doctor_id"], ["doctors.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"], unique=False)
    op.create_index("ix_appointments_doctor_id", "appointments", ["doctor_id"], unique=False)

    op.create_table(
        "reminder_templates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("channel", reminder_channel_enum, nullable=False),
        sa.Column("appointment_type", sa.String(length=255), nullable=True),
        sa.Column("subject", sa.String(length=998), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(length=255), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_reminder_templates_channel_type_live",
        "reminder_templates",
        ["channel", "appointment_type"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL AND appointment_type IS NOT NULL"),
    )
    op.create_index(
        "uq_reminder_templates_channel_default_live",
        "reminder_templates",
        ["channel"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL AND appointment_type IS NULL"),
    )

    op.create_table(
        "communication_preferences",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel", reminder_channel_enum, nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("time_before_appointment", sa.Interval(), nullable=True),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("patient_id", "channel", name="uq_preference_channel"),
    )
    op.create_index(
        "ix_communication_preferences_patient_id",
        "communication_preferences",
        ["patient_id"],
        unique=False,
    )

    op.create_table(
        "opt_in_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("channel", reminder_channel_enum, nullable=False),
        sa.Column("opted_in", sa.Boolean(), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_opt_in_logs_patient_channel_created",
        "opt_in_logs",
        ["patient_id", "channel", "created_at"],
        unique=False,
    )

    op.create_table(
        "reminders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("template_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("escalated_from_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("channel", reminder_channel_enum, nullable=False),
        sa.Column(
            "status",
            reminder_status_enum,
            nullable=False,
            server_default=sa.text("'PENDING'"),
        ),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_attempt_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("response_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("response", sa.Text(), nullable=True),
        sa.Column("rendered_subject", sa.String(length=998), nullable=True),
        sa.Column("rendered_body", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["template_id"], ["reminder_templates.id"], ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(["escalated_from_id"], ["reminders.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_reminders_appointment_id", "reminders", ["appointment_id"], unique=False)
    op.create_index("ix_reminders_status", "reminders", ["status"], unique=False)
    op.create_index("ix_reminders_external_id", "reminders", ["external_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=False, server_default="system"),
        sa.Column("level", sa.String(length=16), nullable=False, server_default="INFO"),
        sa.Column(
            "occurred_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False
        ),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_reminders_external_id", table_name="reminders")
    op.drop_index("ix_reminders_status", table_name="reminders")
    op.drop_index("ix_reminders_appointment_id", table_name="reminders")
    op.drop_table("reminders")
    op.drop_index("ix_opt_in_logs_patient_channel_created", table_name="opt_in_logs")
    op.drop_table("opt_in_logs")
    op.drop_index(
        "ix_communication_preferences_patient_id", table_name="communication_preferences"
    )
    op.drop_table("communication_preferences")
    op.drop_index("uq_reminder_templates_channel_default_live", table_name="reminder_templates")
    op.drop_index("uq_reminder_templates_channel_type_live", table_name="reminder_templates")
    op.drop_table("reminder_templates")
    op.drop_index("ix_appointments_doctor_id", table_name="appointments")
    op.drop_index("ix_appointments_patient_id", table_name="appointments")
    op.drop_table("appointments")
    op.drop_table("doctors")
    op.drop_table("patients")

    bind = op.get_bind()
    reminder_status_enum.drop(bind, checkfirst=True)
    reminder_channel_enum.drop(bind, checkfirst=True)
    appointment_status_enum.drop(bind, checkfirst=True)
