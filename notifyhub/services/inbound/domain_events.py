"""Outbound domain events for the business layer.

Events are staged in the caller's transaction through the outbox and published
to Kafka by `OutboxPublisher`; the business layer owns any retry of its own
state change.
"""

from typing import Any
from uuid import uuid4

from notifyhub.common.events import EventEnvelope
from notifyhub.common.logging import trace_id_ctx
from notifyhub.common.outbox import add_outbox_event


CUSTOMER_CONFIRMED = "appointments.customer_confirmed"
CUSTOMER_CANCELLATION_REQUESTED = "appointments.customer_cancellation_requested"
CUSTOMER_RESCHEDULE_REQUESTED = "appointments.customer_reschedule_requested"


def _emit(db, event_type: str, tenant_id: str, correlation_id: str, detail: dict[str, Any]) -> EventEnvelope:
    event = EventEnvelope(
        event_type=event_type,
        aggregate_id=correlation_id,
        tenant_id=tenant_id,
        trace_id=trace_id_ctx.get() or str(uuid4()),
        payload={"correlation_id": correlation_id, **detail},
    )
    add_outbox_event(db, event, topic=event_type)
    return event


def on_customer_confirmed(db, tenant_id: str, correlation_id: str, detail: dict[str, Any]) -> EventEnvelope:
    return _emit(db, CUSTOMER_CONFIRMED, tenant_id, correlation_id, detail)


def on_customer_requested_cancellation(db, tenant_id: str, correlation_id: str, detail: dict[str, Any]) -> EventEnvelope:
    return _emit(db, CUSTOMER_CANCELLATION_REQUESTED, tenant_id, correlation_id, detail)


def on_customer_requested_reschedule(db, tenant_id: str, correlation_id: str, detail: dict[str, Any]) -> EventEnvelope:
    return _emit(db, CUSTOMER_RESCHEDULE_REQUESTED, tenant_id, correlation_id, detail)
