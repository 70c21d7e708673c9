"""Append-only delivery history."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from notifyhub.common.db import Base, utcnow


class DeliveryRecord(Base):
    """One observed delivery status for a job. Rows are never updated."""

    __tablename__ = "delivery_records"
    __table_args__ = (
        UniqueConstraint("job_id", "sequence", name="uq_delivery_record_sequence"),
        UniqueConstraint("dedupe_key", name="uq_delivery_record_dedupe"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("notification_jobs.id"), index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    out_of_order: Mapped[bool] = mapped_column(Boolean, default=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True)
