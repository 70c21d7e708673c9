"""Durable dispatch queue over `notification_jobs`.

Jobs become visible at `scheduled_for`. `lease` claims visible rows with
`FOR UPDATE SKIP LOCKED` and stamps a fresh lease token; every completion is a
compare-and-swap on `(id, IN_FLIGHT, lease_token)`, so a worker whose lease
expired and was taken over can never complete the job a second time.
"""

from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

import pydantic
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from notifyhub.common.config import settings
from notifyhub.common.db import utcnow
from notifyhub.common.errors import InvalidTransitionError, LeaseLostError, ValidationError
from notifyhub.common.logging import logger
from notifyhub.common.metrics import notifications_dead_total, notifications_enqueued_total, queue_depth, retries_total
from notifyhub.common.state_machine import ACTIVE_STATUSES, priority_for, validate_transition
from notifyhub.services.dispatch.models import NotificationJob, make_dedupe_key
from notifyhub.services.dispatch.schemas import EnqueueRequest
from notifyhub.services.tracker.service import DeliveryTracker


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    created: bool


def parse_enqueue_request(data) -> EnqueueRequest:
    """Validate raw ingestion input, raising the domain `ValidationError`."""

    if isinstance(data, EnqueueRequest):
        return data
    try:
        return EnqueueRequest.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


class DispatchQueue:
    def __init__(
        self,
        session_factory,
        tracker: DeliveryTracker,
        clock=utcnow,
        lease_seconds: int | None = None,
        default_max_attempts: int | None = None,
        service_name: str = "dispatch",
    ) -> None:
        self.session_factory = session_factory
        self.tracker = tracker
        self.clock = clock
        self.lease_seconds = lease_seconds or settings.lease_seconds
        self.default_max_attempts = default_max_attempts or settings.default_max_attempts
        self.service_name = service_name

    def _active_job(self, db, dedupe_key: str) -> NotificationJob | None:
        return (
            db.execute(
                select(NotificationJob).where(
                    NotificationJob.dedupe_key == dedupe_key,
                    NotificationJob.status.in_(ACTIVE_STATUSES),
                )
            )
            .scalars()
            .first()
        )

    def enqueue(self, request) -> EnqueueResult:
        """Create a job, or return the live job already holding the same dedupe key."""

        req = parse_enqueue_request(request)
        dedupe_key = make_dedupe_key(req.tenant_id, req.correlation_id, req.notification_type, req.channel)
        now = self.clock()
        with self.session_factory() as db:
            existing = self._active_job(db, dedupe_key)
            if existing:
                logger.info("enqueue_deduplicated dedupe_key=%s job_id=%s", dedupe_key, existing.id)
                return EnqueueResult(job_id=existing.id, created=False)

            job = NotificationJob(
                tenant_id=req.tenant_id,
                correlation_id=req.correlation_id,
                channel=req.channel,
                notification_type=req.notification_type,
                template_name=req.template_name,
                variables=req.variables,
                recipient_address=req.recipient_address,
                dedupe_key=dedupe_key,
                status="PENDING",
                priority=priority_for(req.notification_type),
                scheduled_for=req.scheduled_for or now,
                attempt_count=0,
                max_attempts=req.max_attempts or self.default_max_attempts,
                created_at=now,
                updated_at=now,
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                # Lost the race against a concurrent enqueue of the same key.
                db.rollback()
                existing = self._active_job(db, dedupe_key)
                if existing is None:
                    raise
                logger.info("enqueue_deduplicated dedupe_key=%s job_id=%s race=true", dedupe_key, existing.id)
                return EnqueueResult(job_id=existing.id, created=False)

        notifications_enqueued_total.labels(
            service=self.service_name,
            channel=job.channel,
            notification_type=job.notification_type,
        ).inc()
        logger.info(
            "job_enqueued job_id=%s tenant_id=%s channel=%s type=%s scheduled_for=%s",
            job.id,
            job.tenant_id,
            job.channel,
            job.notification_type,
            job.scheduled_for.isoformat(),
        )
        return EnqueueResult(job_id=job.id, created=True)

    def _reap_expired(self, db, now) -> int:
        """Dead-letter expired leases that have no attempts left."""

        expired = (
            db.execute(
                select(NotificationJob)
                .where(
                    NotificationJob.status == "IN_FLIGHT",
                    NotificationJob.lease_expires_at < now,
                    NotificationJob.attempt_count >= NotificationJob.max_attempts,
                )
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        for job in expired:
            job.status = "DEAD"
            job.lease_owner = None
            job.lease_token = None
            job.lease_expires_at = None
            job.last_error_kind = job.last_error_kind or "TRANSIENT"
            job.last_error = "lease expired with attempts exhausted"
            job.updated_at = now
            self.tracker.append(db, job.id, "DEAD", "DISPATCHER", occurred_at=now, detail=job.last_error)
            notifications_dead_total.labels(service=self.service_name, channel=job.channel, reason="lease_expired").inc()
            logger.warning("job_dead_lease_expired job_id=%s attempts=%s", job.id, job.attempt_count)
        return len(expired)

    def lease(self, worker_id: str, limit: int = 1) -> list[NotificationJob]:
        """Claim up to `limit` visible jobs for `worker_id`.

        High-priority lanes go first, then the oldest schedule.
        """

        now = self.clock()
        table = NotificationJob.__table__
        with self.session_factory() as db:
            self._reap_expired(db, now)
            visible = (
                select(table.c.id)
                .where(
                    table.c.attempt_count < table.c.max_attempts,
                    or_(
                        and_(table.c.status == "PENDING", table.c.scheduled_for <= now),
                        and_(table.c.status == "IN_FLIGHT", table.c.lease_expires_at < now),
                    ),
                )
                .order_by(table.c.priority, table.c.scheduled_for, table.c.created_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
                .cte("visible_jobs")
            )
            rows = db.execute(
                update(table)
                .where(table.c.id.in_(select(visible.c.id)))
                .values(
                    status="IN_FLIGHT",
                    lease_owner=worker_id,
                    lease_token=str(uuid4()),
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                    updated_at=now,
                )
                .returning(table.c.id)
            ).all()
            db.commit()
            if not rows:
                return []
            jobs = (
                db.execute(
                    select(NotificationJob)
                    .where(NotificationJob.id.in_([row.id for row in rows]))
                    .order_by(NotificationJob.priority, NotificationJob.scheduled_for, NotificationJob.created_at)
                    .execution_options(populate_existing=True)
                )
                .scalars()
                .all()
            )
        for job in jobs:
            logger.info("job_leased job_id=%s worker=%s attempt_count=%s", job.id, worker_id, job.attempt_count)
        return list(jobs)

    def _guarded_update(self, db, job: NotificationJob, **values) -> None:
        result = db.execute(
            update(NotificationJob)
            .where(
                NotificationJob.id == job.id,
                NotificationJob.status == "IN_FLIGHT",
                NotificationJob.lease_token == job.lease_token,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise LeaseLostError(f"lease lost for job {job.id}")
        for key, value in values.items():
            setattr(job, key, value)

    def _release_values(self) -> dict:
        return {"lease_owner": None, "lease_token": None, "lease_expires_at": None}

    def begin_attempt(self, job: NotificationJob) -> NotificationJob:
        """Consume one attempt right before the provider call."""

        if job.attempt_count >= job.max_attempts:
            raise InvalidTransitionError(f"job {job.id} has no attempts left")
        now = self.clock()
        with self.session_factory() as db:
            self._guarded_update(db, job, attempt_count=job.attempt_count + 1, last_attempt_at=now, updated_at=now)
            db.commit()
        return job

    def mark_sent(self, job: NotificationJob, provider_message_id: str) -> NotificationJob:
        validate_transition(job.status, "SENT")
        now = self.clock()
        with self.session_factory() as db:
            self._guarded_update(
                db,
                job,
                status="SENT",
                provider_message_id=provider_message_id,
                last_error_kind=None,
                last_error=None,
                updated_at=now,
                **self._release_values(),
            )
            self.tracker.append(
                db, job.id, "SENT", "DISPATCHER", occurred_at=now, detail=f"provider_message_id={provider_message_id}"
            )
            db.commit()
        return job

    def schedule_retry(self, job: NotificationJob, error_kind: str, detail: str, delay_seconds: float) -> str:
        """Record a failed attempt, then re-queue it or dead-letter when attempts are exhausted.

        Returns the job's resulting status.
        """

        validate_transition(job.status, "FAILED")
        now = self.clock()
        exhausted = job.attempt_count >= job.max_attempts
        with self.session_factory() as db:
            self.tracker.append(
                db,
                job.id,
                "FAILED",
                "DISPATCHER",
                occurred_at=now,
                detail=f"attempt={job.attempt_count} error_kind={error_kind} {detail}",
            )
            if exhausted:
                validate_transition("FAILED", "DEAD")
                self._guarded_update(
                    db,
                    job,
                    status="DEAD",
                    last_error_kind=error_kind,
                    last_error=detail,
                    updated_at=now,
                    **self._release_values(),
                )
                self.tracker.append(
                    db, job.id, "DEAD", "DISPATCHER", occurred_at=now, detail=f"attempts exhausted: {detail}"
                )
            else:
                validate_transition("FAILED", "PENDING")
                self._guarded_update(
                    db,
                    job,
                    status="PENDING",
                    scheduled_for=now + timedelta(seconds=delay_seconds),
                    last_error_kind=error_kind,
                    last_error=detail,
                    updated_at=now,
                    **self._release_values(),
                )
            db.commit()

        if exhausted:
            notifications_dead_total.labels(service=self.service_name, channel=job.channel, reason="exhausted").inc()
            logger.warning("job_dead_exhausted job_id=%s attempts=%s error_kind=%s", job.id, job.attempt_count, error_kind)
        else:
            retries_total.labels(service=self.service_name, dependency=job.channel).inc()
            logger.info(
                "job_retry_scheduled job_id=%s attempt=%s delay_seconds=%.2f error_kind=%s",
                job.id,
                job.attempt_count,
                delay_seconds,
                error_kind,
            )
        return job.status

    def mark_dead(self, job: NotificationJob, error_kind: str, detail: str) -> NotificationJob:
        """Dead-letter a job whose failure is not worth retrying."""

        validate_transition(job.status, "DEAD")
        now = self.clock()
        with self.session_factory() as db:
            self._guarded_update(
                db,
                job,
                status="DEAD",
                last_error_kind=error_kind,
                last_error=detail,
                updated_at=now,
                **self._release_values(),
            )
            self.tracker.append(db, job.id, "DEAD", "DISPATCHER", occurred_at=now, detail=f"{error_kind}: {detail}")
            db.commit()
        notifications_dead_total.labels(service=self.service_name, channel=job.channel, reason=error_kind).inc()
        logger.warning("job_dead job_id=%s error_kind=%s detail=%s", job.id, error_kind, detail)
        return job

    def release(self, job: NotificationJob, delay_seconds: float, reason: str) -> NotificationJob:
        """Hand a leased job back without consuming an attempt."""

        validate_transition(job.status, "PENDING")
        now = self.clock()
        with self.session_factory() as db:
            self._guarded_update(
                db,
                job,
                status="PENDING",
                scheduled_for=now + timedelta(seconds=delay_seconds),
                updated_at=now,
                **self._release_values(),
            )
            db.commit()
        logger.info("job_released job_id=%s delay_seconds=%.2f reason=%s", job.id, delay_seconds, reason)
        return job

    def withdraw(self, tenant_id: str, correlation_id: str, notification_types: tuple[str, ...], reason: str) -> int:
        """Dead-letter not-yet-leased jobs made obsolete by a business change.

        Leased jobs are left to finish; only `PENDING` rows are touched.
        """

        now = self.clock()
        with self.session_factory() as db:
            jobs = (
                db.execute(
                    select(NotificationJob)
                    .where(
                        NotificationJob.tenant_id == tenant_id,
                        NotificationJob.correlation_id == correlation_id,
                        NotificationJob.notification_type.in_(notification_types),
                        NotificationJob.status == "PENDING",
                    )
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            for job in jobs:
                validate_transition(job.status, "DEAD")
                job.status = "DEAD"
                job.last_error_kind = "WITHDRAWN"
                job.last_error = reason
                job.updated_at = now
                self.tracker.append(db, job.id, "DEAD", "OPERATOR", occurred_at=now, detail=f"withdrawn: {reason}")
            db.commit()
        for job in jobs:
            logger.info("job_withdrawn job_id=%s type=%s reason=%s", job.id, job.notification_type, reason)
        return len(jobs)

    def get(self, job_id: str) -> NotificationJob | None:
        with self.session_factory() as db:
            return db.get(NotificationJob, job_id)

    def depth(self) -> dict[str, int]:
        """Job counts by queue bucket.

        `failed` counts jobs waiting for a retry after a failed attempt, so it
        does not overlap `pending`/`scheduled`.
        """

        now = self.clock()
        retrying = NotificationJob.last_error_kind.is_not(None)
        buckets = {
            "pending": and_(NotificationJob.status == "PENDING", ~retrying, NotificationJob.scheduled_for <= now),
            "scheduled": and_(NotificationJob.status == "PENDING", ~retrying, NotificationJob.scheduled_for > now),
            "in_flight": NotificationJob.status == "IN_FLIGHT",
            "failed": or_(NotificationJob.status == "FAILED", and_(NotificationJob.status == "PENDING", retrying)),
            "dead": NotificationJob.status == "DEAD",
        }
        counts = {}
        with self.session_factory() as db:
            for name, condition in buckets.items():
                counts[name] = db.execute(
                    select(func.count()).select_from(NotificationJob).where(condition)
                ).scalar_one()
        for name, value in counts.items():
            queue_depth.labels(service=self.service_name, status=name).set(float(value))
        return counts

    def dead_letters(self, tenant_id: str | None = None, limit: int = 100) -> list[NotificationJob]:
        with self.session_factory() as db:
            query = select(NotificationJob).where(NotificationJob.status == "DEAD")
            if tenant_id:
                query = query.where(NotificationJob.tenant_id == tenant_id)
            query = query.order_by(NotificationJob.updated_at.desc()).limit(limit)
            return list(db.execute(query).scalars().all())

    def replay_dead_letter(self, job_id: str, operator: str = "operator") -> NotificationJob:
        """Operator action: return a dead job to `PENDING` with a fresh attempt budget."""

        now = self.clock()
        with self.session_factory() as db:
            job = db.execute(
                select(NotificationJob).where(NotificationJob.id == job_id).with_for_update()
            ).scalar_one_or_none()
            if job is None:
                raise ValidationError(f"job not found: {job_id}")
            if job.status != "DEAD":
                raise InvalidTransitionError(f"only DEAD jobs can be replayed, job {job_id} is {job.status}")
            if self._active_job(db, job.dedupe_key) is not None:
                raise ValidationError(f"an active job already exists for {job.dedupe_key}")

            previous_error = job.last_error
            job.status = "PENDING"
            job.attempt_count = 0
            job.scheduled_for = now
            job.last_error_kind = None
            job.last_error = None
            job.provider_message_id = None
            job.updated_at = now
            self.tracker.append(
                db, job.id, "PENDING", "OPERATOR", occurred_at=now, detail=f"replayed by {operator}; was: {previous_error}"
            )
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ValidationError(f"an active job already exists for {job.dedupe_key}") from exc
        logger.info("dead_letter_replayed job_id=%s operator=%s", job_id, operator)
        return job
