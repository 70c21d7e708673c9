"""Transactional outbox for domain events sent to the business layer.

Domain events are staged in the same transaction as the callback that caused
them and published to Kafka afterwards by `OutboxPublisher`. A row is claimed
(`PROCESSING`) before publishing; a claim that is never settled is reclaimed
after `claim_timeout_seconds`, so delivery is at-least-once.
"""

import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, Text, and_, func, or_, select, update
from sqlalchemy.orm import Mapped, mapped_column

from notifyhub.common.db import Base, JSONType, as_utc, utcnow
from notifyhub.common.events import EventEnvelope, KafkaBus
from notifyhub.common.logging import logger
from notifyhub.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total


class OutboxEvent(Base):
    """One domain event waiting to be published."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    publish_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def add_outbox_event(db, event: EventEnvelope, topic: str, aggregate_type: str = "appointment") -> OutboxEvent:
    """Stage one envelope in the caller's transaction."""

    row = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=event.aggregate_id,
        event_type=event.event_type,
        topic=topic,
        payload=event.model_dump(),
        status="PENDING",
        publish_attempts=0,
    )
    db.add(row)
    return row


class OutboxPublisher:
    """Background loop publishing outbox rows to Kafka in creation order."""

    def __init__(
        self,
        session_factory,
        service_name: str,
        kafka: KafkaBus | None = None,
        batch_size: int = 100,
        claim_timeout_seconds: int = 30,
        clock=utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.kafka = kafka or KafkaBus()
        self.batch_size = batch_size
        self.claim_timeout_seconds = claim_timeout_seconds
        self.clock = clock

    def claim_batch(self) -> list[dict]:
        """Atomically claim pending rows plus claims that went stale."""

        table = OutboxEvent.__table__
        now = self.clock()
        stale_before = now - timedelta(seconds=self.claim_timeout_seconds)
        claimable = (
            select(table.c.id)
            .where(
                or_(
                    table.c.status == "PENDING",
                    and_(table.c.status == "PROCESSING", table.c.claimed_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
            .cte("claimable_outbox")
        )
        with self.session_factory() as db:
            rows = db.execute(
                update(table)
                .where(table.c.id.in_(select(claimable.c.id)))
                .values(status="PROCESSING", claimed_at=now, publish_attempts=table.c.publish_attempts + 1)
                .returning(table.c.id, table.c.topic, table.c.payload, table.c.created_at)
            ).all()
            db.commit()
        # RETURNING order is unspecified; publish oldest first.
        rows = sorted(rows, key=lambda row: as_utc(row.created_at))
        return [{"id": row.id, "topic": row.topic, "payload": row.payload} for row in rows]

    def _settle(self, event_id: str, **values) -> None:
        with self.session_factory() as db:
            db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id, OutboxEvent.status == "PROCESSING")
                .values(**values)
            )
            db.commit()

    def backlog(self) -> tuple[int, float]:
        """Unpublished row count and the age in seconds of the oldest one."""

        unpublished = OutboxEvent.status.in_(("PENDING", "PROCESSING"))
        with self.session_factory() as db:
            count = db.execute(select(func.count()).select_from(OutboxEvent).where(unpublished)).scalar_one()
            oldest = as_utc(db.execute(select(func.min(OutboxEvent.created_at)).where(unpublished)).scalar_one())
        age = max(0.0, (self.clock() - oldest).total_seconds()) if oldest is not None else 0.0
        outbox_pending_total.labels(service=self.service_name).set(float(count))
        outbox_oldest_pending_age_seconds.labels(service=self.service_name).set(age)
        return count, age

    async def publish_pending(self) -> int:
        """Publish one claimed batch; returns how many rows were sent."""

        sent = 0
        for row in self.claim_batch():
            try:
                await self.kafka.publish(row["topic"], EventEnvelope.model_validate(row["payload"]))
            except Exception as exc:
                logger.exception("outbox_publish_failed event_id=%s topic=%s error=%s", row["id"], row["topic"], exc)
                self._settle(row["id"], status="PENDING", claimed_at=None, last_error=str(exc)[:500])
                continue
            self._settle(row["id"], status="SENT", sent_at=self.clock(), last_error=None)
            sent += 1
        self.backlog()
        return sent

    async def run_forever(self, interval_seconds: float = 0.5) -> None:
        while True:
            try:
                await self.publish_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("outbox_loop_error service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(interval_seconds)
