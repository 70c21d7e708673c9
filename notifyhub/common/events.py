"""Kafka envelope plus producer/consumer helpers.

Lifecycle events from the business layer come in on one topic and customer
domain events go out on one topic per event type. Every message is keyed by
`aggregate_id`, so all events of one appointment land on the same partition
and are consumed in the order they were published.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

import pydantic
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from notifyhub.common.config import settings
from notifyhub.common.logging import logger, tenant_id_ctx, trace_id_ctx
from notifyhub.common.metrics import event_queue_delay_seconds


EventHandler = Callable[["EventEnvelope"], Awaitable[None]]


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics.

    `aggregate_id` is the business correlation id (an appointment id).
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    tenant_id: str = ""
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: str(uuid4()))
    payload: dict[str, Any]


def decode_envelope(raw: bytes) -> EventEnvelope:
    """Parse one Kafka message value; raises `ValueError` for anything else."""

    try:
        return EventEnvelope.model_validate_json(raw)
    except pydantic.ValidationError as exc:
        raise ValueError(f"invalid event envelope: {exc.error_count()} error(s)") from exc


class KafkaBus:
    """Lazy Kafka producer wrapper used by the outbox publisher."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=settings.kafka_bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            event.model_dump_json().encode("utf-8"),
            key=event.aggregate_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a started consumer with manual commits."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def observe_event_delay(topic: str, event: EventEnvelope) -> float:
    try:
        occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)
    return delay_seconds


async def handle_message(topic: str, group_id: str, raw: bytes, offset: int, handler: EventHandler) -> bool:
    """Decode one message and run `handler` with trace/tenant context bound.

    Returns False when the message was skipped; a poison message is logged
    and never blocks the partition.
    """

    try:
        event = decode_envelope(raw)
    except ValueError as exc:
        logger.error("event_undecodable topic=%s group=%s offset=%s error=%s", topic, group_id, offset, exc)
        return False

    observe_event_delay(topic, event)
    trace_token = trace_id_ctx.set(event.trace_id)
    tenant_token = tenant_id_ctx.set(event.tenant_id)
    try:
        logger.info(
            "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
            topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        await handler(event)
        return True
    except Exception as exc:
        logger.error(
            "handler_error topic=%s group=%s offset=%s event_id=%s error=%s",
            topic,
            group_id,
            offset,
            event.event_id,
            exc,
        )
        return False
    finally:
        trace_id_ctx.reset(trace_token)
        tenant_id_ctx.reset(tenant_token)


async def consume_forever(topic: str, group_id: str, handler: EventHandler) -> None:
    """Consume `topic` until cancelled, committing after each polled batch.

    Broker errors tear the consumer down and reconnect after a short pause.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                batches = await consumer.getmany(timeout_ms=500, max_records=50)
                if not batches:
                    continue
                for messages in batches.values():
                    for msg in messages:
                        await handle_message(topic, group_id, msg.value, msg.offset, handler)
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
