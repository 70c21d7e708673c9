"""Message template persistence model."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from notifyhub.common.db import Base, JSONType, utcnow


class MessageTemplate(Base):
    """Tenant-owned template for one channel and one notification type."""

    __tablename__ = "message_templates"
    __table_args__ = (UniqueConstraint("tenant_id", "name", "channel", name="uq_template_tenant_name_channel"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    notification_type: Mapped[str] = mapped_column(String)
    body_template: Mapped[str] = mapped_column(Text)
    subject_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    required_variables: Mapped[list] = mapped_column(JSONType, default=list)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
