"""Inbound callback dedupe cache."""

from datetime import datetime

from sqlalchemy import DateTime, PrimaryKeyConstraint, String, func
from sqlalchemy.orm import Mapped, mapped_column

from notifyhub.common.db import Base, utcnow


class ProcessedCallback(Base):
    """Provider delivery ids already handled; purged after the dedupe TTL."""

    __tablename__ = "processed_callbacks"
    __table_args__ = (PrimaryKeyConstraint("channel", "delivery_id", name="pk_processed_callbacks"),)

    channel: Mapped[str] = mapped_column(String)
    delivery_id: Mapped[str] = mapped_column(String)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
