"""Inbound provider callback processing.

Flow per callback: verify signature (fail closed) -> decode -> per event,
skip provider redeliveries through the `processed_callbacks` cache -> record
receipts or interpret replies. The dedupe row, the delivery record and any
domain event for one event commit together, so a redelivered callback can
never produce a second record or a second domain event.
"""

import asyncio
from datetime import timedelta

from pydantic import BaseModel, Field
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from notifyhub.common.config import settings
from notifyhub.common.db import utcnow
from notifyhub.common.errors import ConfigurationError, MalformedCallbackError, ValidationError
from notifyhub.common.logging import logger
from notifyhub.common.metrics import domain_events_emitted_total, duplicate_events_skipped_total, inbound_callbacks_total
from notifyhub.services.dispatch.queue import DispatchQueue
from notifyhub.services.inbound import commands
from notifyhub.services.inbound.domain_events import (
    on_customer_confirmed,
    on_customer_requested_cancellation,
    on_customer_requested_reschedule,
)
from notifyhub.services.inbound.models import ProcessedCallback
from notifyhub.services.providers.base import InboundEvent
from notifyhub.services.providers.registry import ProviderRegistry
from notifyhub.services.tracker.service import DeliveryTracker


DOMAIN_EVENT_EMITTERS = {
    commands.CONFIRM: on_customer_confirmed,
    commands.CANCEL: on_customer_requested_cancellation,
    commands.RESCHEDULE: on_customer_requested_reschedule,
}
HELP_TEMPLATE_NAME = "help_menu"


class HandledOutcome(BaseModel):
    """Summary of what one callback delivery caused."""

    channel: str
    verified: bool = False
    events_seen: int = 0
    receipts_recorded: int = 0
    duplicates_skipped: int = 0
    domain_events: list[str] = Field(default_factory=list)
    replies_enqueued: int = 0
    unmatched_receipts: int = 0
    discarded_reason: str | None = None


class InboundCommandProcessor:
    def __init__(
        self,
        session_factory,
        registry: ProviderRegistry,
        tracker: DeliveryTracker,
        queue: DispatchQueue,
        clock=utcnow,
        dedupe_ttl_seconds: int | None = None,
        service_name: str = "inbound",
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.tracker = tracker
        self.queue = queue
        self.clock = clock
        self.dedupe_ttl_seconds = dedupe_ttl_seconds or settings.callback_dedupe_ttl_seconds
        self.service_name = service_name

    def _count(self, channel: str, outcome: str) -> None:
        inbound_callbacks_total.labels(service=self.service_name, channel=channel, outcome=outcome).inc()

    def handle_callback(self, channel: str, raw_payload: bytes, signature_header: str | None) -> HandledOutcome:
        outcome = HandledOutcome(channel=channel)
        try:
            adapter = self.registry.get(channel)
        except ConfigurationError:
            logger.warning("inbound_unknown_channel channel=%s", channel)
            self._count(channel, "unknown_channel")
            outcome.discarded_reason = "unknown_channel"
            return outcome

        if not adapter.verify_inbound_signature(raw_payload, signature_header):
            logger.warning(
                "inbound_signature_rejected channel=%s header_present=%s bytes=%s",
                channel,
                bool(signature_header),
                len(raw_payload),
            )
            self._count(channel, "unverified")
            outcome.discarded_reason = "signature_invalid"
            return outcome
        outcome.verified = True

        try:
            events = adapter.parse_callback(raw_payload)
        except MalformedCallbackError as exc:
            logger.warning("inbound_malformed channel=%s error=%s", channel, exc)
            self._count(channel, "malformed")
            outcome.discarded_reason = "malformed"
            return outcome

        outcome.events_seen = len(events)
        for event in events:
            event.verified = True
            try:
                self._handle_event(channel, event, outcome)
            except Exception as exc:
                # One bad event must not stop the rest of the batch.
                logger.exception(
                    "inbound_event_error channel=%s delivery_id=%s error=%s", channel, event.delivery_id, exc
                )
        self._count(channel, "processed")
        return outcome

    def _seen(self, db, channel: str, delivery_id: str) -> bool:
        return db.get(ProcessedCallback, (channel, delivery_id)) is not None

    def _mark(self, db, channel: str, delivery_id: str) -> None:
        db.add(ProcessedCallback(channel=channel, delivery_id=delivery_id, processed_at=self.clock()))

    def _skip_duplicate(self, channel: str, event: InboundEvent, outcome: HandledOutcome) -> None:
        outcome.duplicates_skipped += 1
        duplicate_events_skipped_total.labels(service=self.service_name, topic=f"callback.{channel}").inc()
        logger.info("inbound_duplicate_skipped channel=%s delivery_id=%s", channel, event.delivery_id)

    def _handle_event(self, channel: str, event: InboundEvent, outcome: HandledOutcome) -> None:
        recorded = False
        emitted: str | None = None
        help_request = None
        with self.session_factory() as db:
            if self._seen(db, channel, event.delivery_id):
                self._skip_duplicate(channel, event, outcome)
                return
            job = None
            if event.kind != "INBOUND_REPLY":
                job = self._receipt_job(db, channel, event)
                if job is None:
                    # Not remembered, so a redelivery after the send commits can still apply.
                    outcome.unmatched_receipts += 1
                    return
            try:
                self._mark(db, channel, event.delivery_id)
                db.flush()
                if job is None:
                    emitted, help_request = self._handle_reply(db, channel, event)
                else:
                    recorded = self._record_receipt(db, channel, event, job)
                db.commit()
            except IntegrityError:
                # A concurrent delivery of the same callback won the insert.
                db.rollback()
                self._skip_duplicate(channel, event, outcome)
                return

        if recorded:
            outcome.receipts_recorded += 1
        if emitted:
            outcome.domain_events.append(emitted)
            domain_events_emitted_total.labels(service=self.service_name, event_type=emitted).inc()
        if help_request is not None:
            try:
                result = self.queue.enqueue(help_request)
                outcome.replies_enqueued += int(result.created)
            except ValidationError as exc:
                logger.warning("help_reply_rejected delivery_id=%s error=%s", event.delivery_id, exc)

    def _receipt_job(self, db, channel: str, event: InboundEvent):
        job = None
        if event.provider_message_id:
            job = self.tracker.find_job_by_provider_message_id(db, channel, event.provider_message_id)
        if job is None:
            logger.info(
                "receipt_unknown_message channel=%s provider_message_id=%s status=%s",
                channel,
                event.provider_message_id,
                event.status,
            )
        return job

    def _record_receipt(self, db, channel: str, event: InboundEvent, job) -> bool:
        record = self.tracker.record_transition(
            db,
            job.id,
            event.status,
            "PROVIDER_CALLBACK",
            event.occurred_at,
            detail=f"delivery_id={event.delivery_id}",
            dedupe_key=f"{channel}:{event.delivery_id}",
        )
        return record is not None

    def _correlate_reply(self, db, channel: str, event: InboundEvent):
        job = None
        if event.context_message_id:
            job = self.tracker.find_job_by_provider_message_id(db, channel, event.context_message_id)
        if job is None and event.sender_address:
            job = self.tracker.latest_sent_job_for_address(db, channel, event.sender_address)
        return job

    def _handle_reply(self, db, channel: str, event: InboundEvent) -> tuple[str | None, dict | None]:
        command = commands.match_command(event.text)
        if command is None:
            logger.info(
                "reply_unmatched channel=%s sender=%s delivery_id=%s text=%r",
                channel,
                event.sender_address,
                event.delivery_id,
                (event.text or "")[:160],
            )
            return None, None

        job = self._correlate_reply(db, channel, event)
        if job is None:
            logger.warning(
                "reply_uncorrelated channel=%s command=%s sender=%s delivery_id=%s",
                channel,
                command,
                event.sender_address,
                event.delivery_id,
            )
            return None, None

        if command == commands.HELP:
            logger.info("reply_help_requested job_id=%s sender=%s", job.id, event.sender_address)
            return None, {
                "tenant_id": job.tenant_id,
                "correlation_id": f"help:{event.delivery_id}",
                "notification_type": "custom",
                "template_name": HELP_TEMPLATE_NAME,
                "channel": channel,
                "recipient_address": event.sender_address or job.recipient_address,
                "variables": dict(job.variables or {}),
            }

        domain_event = DOMAIN_EVENT_EMITTERS[command](
            db,
            job.tenant_id,
            job.correlation_id,
            {
                "channel": channel,
                "job_id": job.id,
                "sender_address": event.sender_address,
                "reply_text": event.text,
                "delivery_id": event.delivery_id,
            },
        )
        logger.info(
            "domain_event_staged event_type=%s correlation_id=%s job_id=%s",
            domain_event.event_type,
            job.correlation_id,
            job.id,
        )
        return domain_event.event_type, None

    def purge_expired(self) -> int:
        """Drop dedupe rows older than the dedupe TTL."""

        cutoff = self.clock() - timedelta(seconds=self.dedupe_ttl_seconds)
        with self.session_factory() as db:
            result = db.execute(delete(ProcessedCallback).where(ProcessedCallback.processed_at < cutoff))
            db.commit()
        if result.rowcount:
            logger.info("processed_callbacks_purged rows=%s", result.rowcount)
        return result.rowcount or 0

    async def run_purge_forever(self, interval_seconds: float = 300.0) -> None:
        while True:
            try:
                self.purge_expired()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("purge_loop_error service=%s error=%s", self.service_name, exc)
            await asyncio.sleep(interval_seconds)
