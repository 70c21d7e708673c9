"""add hot-path indexes for leasing, callback lookups and the outbox

Revision ID: 0002_hot_path_indexes
Revises: 0001_notifyhub
Create Date: 2026-10-14
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_notifyhub"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_notification_jobs_visible",
        "notification_jobs",
        ["status", "priority", "scheduled_for", "created_at"],
    )
    op.create_index(
        "ix_notification_jobs_provider_message",
        "notification_jobs",
        ["channel", "provider_message_id"],
    )
    op.create_index(
        "ix_notification_jobs_recipient",
        "notification_jobs",
        ["channel", "recipient_address", "last_attempt_at"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_notification_jobs_recipient", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_provider_message", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_visible", table_name="notification_jobs")
