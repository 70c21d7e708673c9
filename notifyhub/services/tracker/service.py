"""Delivery bookkeeping.

Every observed outcome of a job is appended to `delivery_records`. Provider
callbacks may arrive in any order, so the job's status only moves forward
along SENT < DELIVERED < READ; anything that arrives late or skips a step is
still recorded, flagged `out_of_order`, and never rejected.
"""

from datetime import datetime, timedelta

from sqlalchemy import distinct, func, select

from notifyhub.common.db import utcnow
from notifyhub.common.logging import logger
from notifyhub.common.state_machine import SUCCESS_STATUSES, delivery_rank, validate_transition
from notifyhub.services.dispatch.models import NotificationJob
from notifyhub.services.tracker.models import DeliveryRecord


class DeliveryTracker:
    def __init__(self, session_factory, clock=utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def append(
        self,
        db,
        job_id: str,
        status: str,
        source: str,
        occurred_at: datetime | None = None,
        detail: str | None = None,
        out_of_order: bool = False,
        dedupe_key: str | None = None,
    ) -> DeliveryRecord:
        """Add one history row in the caller's transaction."""

        last_sequence = db.execute(
            select(func.max(DeliveryRecord.sequence)).where(DeliveryRecord.job_id == job_id)
        ).scalar_one()
        record = DeliveryRecord(
            job_id=job_id,
            sequence=(last_sequence or 0) + 1,
            status=status,
            source=source,
            occurred_at=occurred_at or self.clock(),
            recorded_at=self.clock(),
            out_of_order=out_of_order,
            detail=detail,
            dedupe_key=dedupe_key,
        )
        db.add(record)
        db.flush()
        return record

    def _has_record(self, db, job_id: str, status: str) -> bool:
        return (
            db.execute(
                select(DeliveryRecord.id).where(DeliveryRecord.job_id == job_id, DeliveryRecord.status == status).limit(1)
            ).first()
            is not None
        )

    def record_transition(
        self,
        db,
        job_id: str,
        new_status: str,
        source: str,
        occurred_at: datetime,
        detail: str | None = None,
        dedupe_key: str | None = None,
    ) -> DeliveryRecord | None:
        """Apply an externally observed status to a job and append it to history.

        Returns None when `dedupe_key` was already recorded or the job is
        unknown. Runs under a row lock on the job so concurrent callbacks for
        the same job serialize.
        """

        if dedupe_key is not None:
            seen = db.execute(select(DeliveryRecord.id).where(DeliveryRecord.dedupe_key == dedupe_key)).first()
            if seen is not None:
                logger.info("delivery_record_duplicate job_id=%s dedupe_key=%s", job_id, dedupe_key)
                return None

        job = db.execute(
            select(NotificationJob).where(NotificationJob.id == job_id).with_for_update()
        ).scalar_one_or_none()
        if job is None:
            logger.warning("delivery_record_unknown_job job_id=%s status=%s", job_id, new_status)
            return None

        out_of_order = False
        previous = job.status
        if new_status == "FAILED":
            if job.status == "SENT":
                validate_transition(job.status, "DEAD")
                job.status = "DEAD"
                job.last_error_kind = "PERMANENT"
                job.last_error = detail or "provider reported delivery failure"
            else:
                out_of_order = True
        elif job.status not in SUCCESS_STATUSES:
            # Receipt for a job whose SENT outcome is not committed yet, or is dead.
            out_of_order = True
        elif delivery_rank(new_status) < delivery_rank(job.status):
            out_of_order = True
        # A repeat of the current status is recorded as-is.
        elif delivery_rank(new_status) > delivery_rank(job.status):
            if new_status == "READ" and not self._has_record(db, job_id, "DELIVERED"):
                out_of_order = True
            validate_transition(job.status, new_status)
            job.status = new_status

        if job.status != previous:
            job.updated_at = self.clock()
            logger.info("job_status_advanced job_id=%s from=%s to=%s source=%s", job_id, previous, job.status, source)
        if out_of_order:
            logger.info(
                "delivery_record_out_of_order job_id=%s current=%s observed=%s", job_id, job.status, new_status
            )
        return self.append(
            db,
            job_id,
            new_status,
            source,
            occurred_at=occurred_at,
            detail=detail,
            out_of_order=out_of_order,
            dedupe_key=dedupe_key,
        )

    def history(self, job_id: str) -> list[DeliveryRecord]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(DeliveryRecord).where(DeliveryRecord.job_id == job_id).order_by(DeliveryRecord.sequence)
                )
                .scalars()
                .all()
            )

    def find_job_by_provider_message_id(self, db, channel: str, provider_message_id: str) -> NotificationJob | None:
        return (
            db.execute(
                select(NotificationJob).where(
                    NotificationJob.channel == channel,
                    NotificationJob.provider_message_id == provider_message_id,
                )
            )
            .scalars()
            .first()
        )

    def latest_sent_job_for_address(self, db, channel: str, address: str) -> NotificationJob | None:
        """Most recent successfully sent job to `address`, used to correlate free replies."""

        return (
            db.execute(
                select(NotificationJob)
                .where(
                    NotificationJob.channel == channel,
                    NotificationJob.recipient_address == address,
                    NotificationJob.status.in_(SUCCESS_STATUSES),
                )
                .order_by(NotificationJob.last_attempt_at.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )

    def aggregate_stats(self, tenant_id: str, window: timedelta) -> dict:
        """Counts over jobs created inside `window`; rates are 0.0 on an empty denominator."""

        since = self.clock() - window
        with self.session_factory() as db:
            counts = dict(
                db.execute(
                    select(DeliveryRecord.status, func.count(distinct(DeliveryRecord.job_id)))
                    .join(NotificationJob, NotificationJob.id == DeliveryRecord.job_id)
                    .where(
                        NotificationJob.tenant_id == tenant_id,
                        NotificationJob.created_at >= since,
                        DeliveryRecord.status.in_(("SENT", "DELIVERED", "READ")),
                    )
                    .group_by(DeliveryRecord.status)
                ).all()
            )
            failed = db.execute(
                select(func.count())
                .select_from(NotificationJob)
                .where(
                    NotificationJob.tenant_id == tenant_id,
                    NotificationJob.created_at >= since,
                    NotificationJob.status == "DEAD",
                )
            ).scalar_one()

        sent = counts.get("SENT", 0)
        delivered = counts.get("DELIVERED", 0)
        read = counts.get("READ", 0)
        return {
            "sent": sent,
            "delivered": delivered,
            "read": read,
            "failed": failed,
            "delivery_rate": delivered / sent if sent else 0.0,
            "read_rate": read / delivered if delivered else 0.0,
        }

