"""Create the scheduled_notifications table for deferred reminders."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_notifications",
        sa.Column("notification_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("recipient_id", sa.String(length=128), nullable=False),
        sa.Column("project_id", sa.String(length=128), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("offset_days", sa.Integer(), nullable=False),
        sa.Column("time_of_day", sa.String(length=5), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("external_handle", sa.String(length=256), nullable=True),
        sa.Column("delivery_ref", sa.String(length=256), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("request_key", sa.String(length=256), nullable=True),
        sa.Column("claim_token", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("notification_id"),
        sa.CheckConstraint("kind IN ('subtask', 'event')", name="ck_scheduled_notifications_kind"),
        sa.CheckConstraint(
            "state IN ('pending', 'sent', 'failed', 'cancelled')",
            name="ck_scheduled_notifications_state",
        ),
        sa.CheckConstraint("offset_days >= 0", name="ck_scheduled_notifications_offset_days"),
    )
    op.create_index(
        "ix_scheduled_notifications_project_id",
        "scheduled_notifications",
        ["project_id"],
        unique=False,
    )
    op.create_index(
        "ix_scheduled_notifications_scheduled_for",
        "scheduled_notifications",
        ["scheduled_for"],
        unique=False,
    )
    op.create_index(
        "ix_scheduled_notifications_state",
        "scheduled_notifications",
        ["state"],
        unique=False,
    )
    op.create_index(
        "ix_scheduled_notifications_kind_entity_id",
        "scheduled_notifications",
        ["kind", "entity_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_scheduled_notifications_kind_entity_id", table_name="scheduled_notifications")
    op.drop_index("ix_scheduled_notifications_state", table_name="scheduled_notifications")
    op.drop_index("ix_scheduled_notifications_scheduled_for", table_name="scheduled_notifications")
    op.drop_index("ix_scheduled_notifications_project_id", table_name="scheduled_notifications")
    op.drop_table("scheduled_notifications")
