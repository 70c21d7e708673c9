"""Inbound callbacks: authenticity, receipts, reply commands and redelivery."""

import json

import pytest
from sqlalchemy import func, select

from conftest import (
    PHONE,
    TENANT,
    enqueue_request,
    sign_whatsapp,
    whatsapp_callback,
    whatsapp_reply,
    whatsapp_status,
)

from notifyhub.common.outbox import OutboxEvent
from notifyhub.services.dispatch.models import NotificationJob
from notifyhub.services.inbound.domain_events import CUSTOMER_CANCELLATION_REQUESTED, CUSTOMER_CONFIRMED
from notifyhub.services.inbound.models import ProcessedCallback
from notifyhub.services.inbound.service import InboundCommandProcessor
from notifyhub.services.providers.registry import ProviderRegistry
from notifyhub.services.tracker.models import DeliveryRecord


@pytest.fixture
def processor(session_factory, whatsapp_adapter, tracker, queue, clock):
    registry = ProviderRegistry({"whatsapp": whatsapp_adapter})
    return InboundCommandProcessor(session_factory, registry, tracker, queue, clock=clock, dedupe_ttl_seconds=3600)


@pytest.fixture
def sent_job(queue):
    result = queue.enqueue(enqueue_request())
    job = queue.lease("worker-a")[0]
    queue.begin_attempt(job)
    queue.mark_sent(job, "wamid.out.1")
    return queue.get(result.job_id)


def count(session_factory, model):
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def deliver(processor, body, signature=None):
    return processor.handle_callback("whatsapp", body, signature if signature is not None else sign_whatsapp(body))


def test_bad_signature_changes_nothing(processor, session_factory, sent_job):
    body = whatsapp_callback(statuses=[whatsapp_status("wamid.out.1", "delivered")])

    outcome = deliver(processor, body, signature=sign_whatsapp(body, secret="wrong"))

    assert outcome.verified is False
    assert outcome.discarded_reason == "signature_invalid"
    assert count(session_factory, DeliveryRecord) == 1
    assert count(session_factory, ProcessedCallback) == 0
    assert processor.queue.get(sent_job.id).status == "SENT"


def test_missing_signature_is_rejected(processor):
    body = whatsapp_callback(messages=[whatsapp_reply("yes")])

    outcome = processor.handle_callback("whatsapp", body, None)

    assert outcome.discarded_reason == "signature_invalid"


def test_unknown_channel_is_discarded(processor):
    outcome = processor.handle_callback("fax", b"{}", "sig")

    assert outcome.discarded_reason == "unknown_channel"


def test_malformed_body_is_discarded(processor):
    outcome = deliver(processor, b"not-json")

    assert outcome.verified is True
    assert outcome.discarded_reason == "malformed"


@pytest.mark.parametrize(
    "body",
    [
        {"entry": [{"changes": [{"value": {"statuses": "oops"}}]}]},
        {"entry": [{"changes": [{"value": {"messages": ["oops"]}}]}]},
        {"entry": ["oops"]},
        {"entry": [{"changes": [{"value": {"messages": [{"id": "wamid.in.1", "type": "text", "text": "hi"}]}}]}]},
        {"entry": [{"changes": [{"value": {"statuses": [{"id": 7, "status": "delivered"}]}}]}]},
        [1, 2, 3],
    ],
)
def test_signed_but_misshapen_body_is_discarded(processor, session_factory, sent_job, body):
    raw = json.dumps(body).encode("utf-8")

    outcome = deliver(processor, raw)

    assert outcome.verified is True
    assert outcome.discarded_reason == "malformed"
    assert count(session_factory, ProcessedCallback) == 0
    assert processor.queue.get(sent_job.id).status == "SENT"


def test_delivery_receipt_advances_job_once(processor, session_factory, sent_job):
    body = whatsapp_callback(statuses=[whatsapp_status("wamid.out.1", "delivered")])

    first = deliver(processor, body)
    second = deliver(processor, body)

    assert first.receipts_recorded == 1
    assert second.receipts_recorded == 0
    assert second.duplicates_skipped == 1
    assert processor.queue.get(sent_job.id).status == "DELIVERED"
    assert [r.status for r in processor.tracker.history(sent_job.id)] == ["SENT", "DELIVERED"]


def test_receipt_for_unknown_message_is_acknowledged(processor, session_factory):
    body = whatsapp_callback(statuses=[whatsapp_status("wamid.unknown", "read")])

    outcome = deliver(processor, body)

    assert outcome.events_seen == 1
    assert outcome.receipts_recorded == 0
    assert outcome.unmatched_receipts == 1
    assert count(session_factory, DeliveryRecord) == 0
    assert count(session_factory, ProcessedCallback) == 0


def test_receipt_that_beats_the_send_commit_applies_on_redelivery(processor, queue):
    result = queue.enqueue(enqueue_request())
    job = queue.lease("worker-a")[0]
    queue.begin_attempt(job)
    body = whatsapp_callback(statuses=[whatsapp_status("wamid.out.1", "delivered")])

    early = deliver(processor, body)
    queue.mark_sent(job, "wamid.out.1")
    redelivered = deliver(processor, body)

    assert early.unmatched_receipts == 1
    assert redelivered.duplicates_skipped == 0
    assert redelivered.receipts_recorded == 1
    assert queue.get(result.job_id).status == "DELIVERED"


def test_cancel_reply_emits_one_domain_event(processor, session_factory, sent_job):
    body = whatsapp_callback(messages=[whatsapp_reply("  CANCEL ", context_id="wamid.out.1")])

    first = deliver(processor, body)
    second = deliver(processor, body)

    assert first.domain_events == [CUSTOMER_CANCELLATION_REQUESTED]
    assert second.domain_events == []
    assert second.duplicates_skipped == 1
    with session_factory() as db:
        events = db.execute(select(OutboxEvent)).scalars().all()
    assert len(events) == 1
    assert events[0].aggregate_id == "appt-1"
    assert events[0].payload["tenant_id"] == TENANT
    assert events[0].payload["payload"]["job_id"] == sent_job.id


def test_reply_without_context_correlates_by_sender(processor, session_factory, sent_job):
    outcome = deliver(processor, whatsapp_callback(messages=[whatsapp_reply("sim")]))

    assert outcome.domain_events == [CUSTOMER_CONFIRMED]


def test_uncorrelated_reply_emits_nothing(processor, session_factory):
    outcome = deliver(processor, whatsapp_callback(messages=[whatsapp_reply("yes")]))

    assert outcome.domain_events == []
    assert count(session_factory, OutboxEvent) == 0
    assert count(session_factory, ProcessedCallback) == 1


def test_free_text_is_logged_not_acted_on(processor, session_factory, sent_job):
    outcome = deliver(processor, whatsapp_callback(messages=[whatsapp_reply("can I bring my dog?")]))

    assert outcome.domain_events == []
    assert outcome.replies_enqueued == 0
    assert count(session_factory, OutboxEvent) == 0


def test_help_reply_enqueues_menu(processor, session_factory, sent_job):
    outcome = deliver(processor, whatsapp_callback(messages=[whatsapp_reply("Ajuda")]))

    assert outcome.replies_enqueued == 1
    with session_factory() as db:
        job = db.execute(select(NotificationJob).where(NotificationJob.template_name == "help_menu")).scalar_one()
    assert job.notification_type == "custom"
    assert job.recipient_address == PHONE
    assert job.correlation_id == "help:wamid.in.1"
    assert job.status == "PENDING"


def test_batch_mixing_receipts_and_replies(processor, sent_job):
    body = whatsapp_callback(
        statuses=[whatsapp_status("wamid.out.1", "delivered"), whatsapp_status("wamid.out.1", "read")],
        messages=[whatsapp_reply("confirm", context_id="wamid.out.1")],
    )

    outcome = deliver(processor, body)

    assert outcome.events_seen == 3
    assert outcome.receipts_recorded == 2
    assert outcome.domain_events == [CUSTOMER_CONFIRMED]
    assert processor.queue.get(sent_job.id).status == "READ"


def test_purge_expired_dedupe_rows(processor, session_factory, clock, sent_job):
    deliver(processor, whatsapp_callback(statuses=[whatsapp_status("wamid.out.1", "delivered")]))

    assert processor.purge_expired() == 0
    clock.advance(3601)
    assert processor.purge_expired() == 1
    assert count(session_factory, ProcessedCallback) == 0
