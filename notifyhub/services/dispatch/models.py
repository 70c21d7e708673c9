"""Notification job persistence model."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from notifyhub.common.db import Base, JSONType, utcnow


ACTIVE_DEDUPE_PREDICATE = text("status IN ('PENDING', 'IN_FLIGHT', 'FAILED', 'SENT')")


def make_dedupe_key(tenant_id: str, correlation_id: str, notification_type: str, channel: str) -> str:
    return f"{tenant_id}:{correlation_id}:{notification_type}:{channel}"


class NotificationJob(Base):
    """One unit of notification work.

    At most one non-terminal job exists per `dedupe_key`; the partial unique
    index below is what resolves concurrent duplicate enqueues.
    """

    __tablename__ = "notification_jobs"
    __table_args__ = (
        CheckConstraint("attempt_count <= max_attempts", name="ck_notification_jobs_attempts"),
        Index(
            "uq_notification_jobs_active_dedupe",
            "dedupe_key",
            unique=True,
            postgresql_where=ACTIVE_DEDUPE_PREDICATE,
            sqlite_where=ACTIVE_DEDUPE_PREDICATE,
        ),
        Index("ix_notification_jobs_visible", "status", "priority", "scheduled_for", "created_at"),
        Index("ix_notification_jobs_provider_message", "channel", "provider_message_id"),
        Index("ix_notification_jobs_recipient", "channel", "recipient_address", "last_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    correlation_id: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String)
    notification_type: Mapped[str] = mapped_column(String)
    template_name: Mapped[str] = mapped_column(String)
    variables: Mapped[dict] = mapped_column(JSONType, default=dict)
    recipient_address: Mapped[str] = mapped_column(String)
    dedupe_key: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="PENDING")
    priority: Mapped[int] = mapped_column(Integer, default=1)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
