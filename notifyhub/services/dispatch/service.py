"""Notification dispatcher worker pool.

Each worker loops lease -> render -> rate-limit -> send -> record. Job-level
failures end up on the job and in its delivery history; nothing is raised back
to the business layer.
"""

import asyncio
import random
from datetime import timedelta

from notifyhub.common.config import settings
from notifyhub.common.errors import ConfigurationError, LeaseLostError, ValidationError
from notifyhub.common.events import EventEnvelope, consume_forever
from notifyhub.common.logging import bind_job_context, logger
from notifyhub.common.metrics import notifications_rate_limited_total, notifications_sent_total
from notifyhub.common.rate_limit import TokenBucketLimiter
from notifyhub.common.tracing import job_span, mark_span_error
from notifyhub.services.dispatch.backoff import BackoffPolicy, default_policy
from notifyhub.services.dispatch.models import NotificationJob
from notifyhub.services.dispatch.queue import DispatchQueue
from notifyhub.services.dispatch.schemas import LifecyclePayload
from notifyhub.services.providers.registry import ProviderRegistry
from notifyhub.services.templates.engine import TemplateEngine


RETRYABLE_ERROR_KINDS = ("TRANSIENT", "RATE_LIMITED")


class NotificationDispatcher:
    """Owns the worker pool and the per-job send state machine."""

    def __init__(
        self,
        queue: DispatchQueue,
        engine: TemplateEngine,
        registry: ProviderRegistry,
        limiter: TokenBucketLimiter | None = None,
        backoff: BackoffPolicy | None = None,
        worker_count: int | None = None,
        poll_interval_seconds: float | None = None,
        service_name: str = "dispatch",
        rng: random.Random | None = None,
    ) -> None:
        self.queue = queue
        self.engine = engine
        self.registry = registry
        self.limiter = limiter
        self.backoff = backoff or default_policy()
        self.worker_count = worker_count or settings.worker_count
        self.poll_interval_seconds = poll_interval_seconds or settings.poll_interval_seconds
        self.service_name = service_name
        self.rng = rng
        self._tasks: list[asyncio.Task] = []

    async def process_job(self, job: NotificationJob) -> str | None:
        """Drive one leased job to its next resting status.

        Returns the resulting status, or None when the lease was lost to
        another worker mid-flight.
        """

        with bind_job_context(job.id, job.tenant_id), job_span("notification.process", job) as span:
            try:
                return await self._process(job, span)
            except LeaseLostError as exc:
                logger.warning("job_lease_lost job_id=%s error=%s", job.id, exc)
                mark_span_error(span, "LeaseLost", str(exc))
                return None

    async def _process(self, job: NotificationJob, span) -> str:
        try:
            rendered = self.engine.render(job.tenant_id, job.channel, job.template_name, job.variables or {})
        except ConfigurationError as exc:
            self.queue.mark_dead(job, "TemplateError", str(exc))
            return job.status
        try:
            adapter = self.registry.get(job.channel)
        except ConfigurationError as exc:
            self.queue.mark_dead(job, "ConfigurationError", str(exc))
            return job.status

        if self.limiter is not None:
            wait_seconds = self.limiter.acquire(job.tenant_id, job.channel)
            if wait_seconds > 0:
                notifications_rate_limited_total.labels(service=self.service_name, channel=job.channel).inc()
                self.queue.release(job, wait_seconds, reason="rate_limited")
                return job.status

        self.queue.begin_attempt(job)
        span.set_attribute("notifyhub.attempt", job.attempt_count)
        result = await adapter.send(job.recipient_address, rendered)
        if result.success:
            self.queue.mark_sent(job, result.provider_message_id)
            notifications_sent_total.labels(service=self.service_name, channel=job.channel).inc()
            logger.info(
                "job_sent job_id=%s channel=%s attempt=%s provider_message_id=%s",
                job.id,
                job.channel,
                job.attempt_count,
                result.provider_message_id,
            )
            return job.status
        mark_span_error(span, result.error_kind or "PERMANENT", result.error_detail)
        if result.error_kind in RETRYABLE_ERROR_KINDS:
            delay = self.backoff.delay(job.attempt_count, retry_after=result.retry_after, rng=self.rng)
            return self.queue.schedule_retry(job, result.error_kind, result.error_detail or "", delay)
        self.queue.mark_dead(job, result.error_kind or "PERMANENT", result.error_detail or "")
        return job.status

    async def run_once(self, worker_id: str) -> int:
        """Lease and process at most one job; returns how many were processed."""

        jobs = self.queue.lease(worker_id, limit=1)
        for job in jobs:
            await self.process_job(job)
        return len(jobs)

    async def _worker_loop(self, worker_id: str) -> None:
        while True:
            try:
                processed = await self.run_once(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("worker_loop_error worker=%s error=%s", worker_id, exc)
                processed = 0
            if processed == 0:
                await asyncio.sleep(self.poll_interval_seconds)

    def start(self) -> None:
        for index in range(self.worker_count):
            worker_id = f"{self.service_name}-{index}"
            self._tasks.append(asyncio.create_task(self._worker_loop(worker_id), name=worker_id))
        logger.info("dispatcher_started workers=%s", self.worker_count)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("dispatcher_stopped")

    def _enqueue_each(self, event: EventEnvelope, payload: LifecyclePayload, notification_type: str, scheduled_for=None) -> int:
        created = 0
        for channel, address in payload.recipients.items():
            try:
                result = self.queue.enqueue(
                    {
                        "tenant_id": event.tenant_id,
                        "correlation_id": event.aggregate_id,
                        "notification_type": notification_type,
                        "channel": channel,
                        "recipient_address": address,
                        "variables": payload.variables,
                        "scheduled_for": scheduled_for,
                    }
                )
                created += int(result.created)
            except ValidationError as exc:
                logger.warning(
                    "lifecycle_enqueue_rejected event_id=%s type=%s channel=%s error=%s",
                    event.event_id,
                    notification_type,
                    channel,
                    exc,
                )
        return created

    def _schedule_reminder(self, event: EventEnvelope, payload: LifecyclePayload) -> int:
        if payload.appointment_at is None:
            return 0
        remind_at = payload.appointment_at - timedelta(hours=settings.reminder_hours_before)
        if remind_at <= self.queue.clock():
            return 0
        return self._enqueue_each(event, payload, "reminder", scheduled_for=remind_at)

    async def handle_lifecycle_event(self, event: EventEnvelope) -> None:
        """Turn one business lifecycle event into notification jobs."""

        try:
            payload = LifecyclePayload.model_validate(event.payload)
        except ValueError as exc:
            logger.warning("lifecycle_event_invalid event_id=%s error=%s", event.event_id, exc)
            return

        if event.event_type == "appointment.created":
            created = self._enqueue_each(event, payload, "confirmation")
            created += self._schedule_reminder(event, payload)
        elif event.event_type == "appointment.rescheduled":
            self.queue.withdraw(event.tenant_id, event.aggregate_id, ("reminder",), reason="appointment rescheduled")
            created = self._enqueue_each(event, payload, "reschedule")
            created += self._schedule_reminder(event, payload)
        elif event.event_type == "appointment.cancelled":
            self.queue.withdraw(
                event.tenant_id,
                event.aggregate_id,
                ("confirmation", "reminder", "reschedule"),
                reason="appointment cancelled",
            )
            created = self._enqueue_each(event, payload, "cancellation")
        else:
            logger.info("lifecycle_event_ignored event_type=%s", event.event_type)
            return
        logger.info(
            "lifecycle_event_handled event_type=%s aggregate_id=%s jobs_created=%s",
            event.event_type,
            event.aggregate_id,
            created,
        )

    async def consume_lifecycle(self) -> None:
        await consume_forever(settings.lifecycle_topic, f"{self.service_name}-lifecycle", self.handle_lifecycle_event)
