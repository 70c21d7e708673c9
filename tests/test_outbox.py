"""Outbox publishing and Kafka envelope handling."""

import json

import pytest
from sqlalchemy import select

from conftest import TENANT

from notifyhub.common.events import EventEnvelope, decode_envelope, handle_message
from notifyhub.common.logging import tenant_id_ctx, trace_id_ctx
from notifyhub.common.outbox import OutboxEvent, OutboxPublisher, add_outbox_event


class FakeBus:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.published: list[tuple[str, EventEnvelope]] = []

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("broker unavailable")
        self.published.append((topic, event))


def stage(session_factory, *event_types):
    with session_factory() as db:
        for event_type in event_types:
            event = EventEnvelope(event_type=event_type, aggregate_id="appt-1", tenant_id=TENANT, payload={"n": 1})
            add_outbox_event(db, event, topic=event_type)
        db.commit()


def rows(session_factory):
    with session_factory() as db:
        return db.execute(select(OutboxEvent).order_by(OutboxEvent.created_at)).scalars().all()


@pytest.mark.asyncio
async def test_publishes_pending_rows(session_factory, clock):
    bus = FakeBus()
    publisher = OutboxPublisher(session_factory, "inbound", kafka=bus, clock=clock)
    stage(session_factory, "appointments.customer_confirmed")

    assert await publisher.publish_pending() == 1
    assert await publisher.publish_pending() == 0

    topic, event = bus.published[0]
    assert topic == "appointments.customer_confirmed"
    assert event.tenant_id == TENANT
    assert [row.status for row in rows(session_factory)] == ["SENT"]
    assert publisher.backlog() == (0, 0.0)


@pytest.mark.asyncio
async def test_failed_publish_is_retried(session_factory, clock):
    bus = FakeBus(failures=1)
    publisher = OutboxPublisher(session_factory, "inbound", kafka=bus, clock=clock)
    stage(session_factory, "appointments.customer_cancellation_requested")

    assert await publisher.publish_pending() == 0
    row = rows(session_factory)[0]
    assert row.status == "PENDING"
    assert "broker unavailable" in row.last_error

    assert await publisher.publish_pending() == 1
    row = rows(session_factory)[0]
    assert row.status == "SENT"
    assert row.publish_attempts == 2


@pytest.mark.asyncio
async def test_abandoned_claim_is_reclaimed(session_factory, clock):
    bus = FakeBus()
    publisher = OutboxPublisher(session_factory, "inbound", kafka=bus, claim_timeout_seconds=30, clock=clock)
    stage(session_factory, "appointments.customer_confirmed")

    assert len(publisher.claim_batch()) == 1
    assert await publisher.publish_pending() == 0

    clock.advance(31)
    assert await publisher.publish_pending() == 1


@pytest.mark.asyncio
async def test_handle_message_binds_context():
    seen = []

    async def handler(event):
        seen.append((event.event_type, trace_id_ctx.get(), tenant_id_ctx.get()))

    raw = EventEnvelope(
        event_type="appointment.created", aggregate_id="appt-1", tenant_id=TENANT, trace_id="trace-1", payload={}
    ).model_dump_json().encode("utf-8")

    assert await handle_message("appointments.lifecycle", "dispatch", raw, 7, handler) is True
    assert seen == [("appointment.created", "trace-1", TENANT)]
    assert trace_id_ctx.get() == ""


@pytest.mark.asyncio
async def test_handle_message_skips_poison_and_failing_handlers():
    calls = []

    async def failing(event):
        calls.append(event.event_id)
        raise RuntimeError("boom")

    good = json.dumps({"event_type": "appointment.created", "aggregate_id": "a", "payload": {}}).encode("utf-8")

    assert await handle_message("t", "g", b"\xff not json", 1, failing) is False
    assert calls == []
    assert await handle_message("t", "g", good, 2, failing) is False
    assert len(calls) == 1


def test_decode_envelope_requires_payload():
    with pytest.raises(ValueError):
        decode_envelope(json.dumps({"event_type": "x", "aggregate_id": "a"}).encode("utf-8"))
