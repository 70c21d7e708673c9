"""Structured JSON logging with trace, tenant and job context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from notifyhub.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="")
job_id_ctx: ContextVar[str] = ContextVar("job_id", default="")


class ContextFilter(logging.Filter):
    """Stamp service, trace, tenant and job identifiers on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.tenant_id = tenant_id_ctx.get()
        record.job_id = job_id_ctx.get()
        return True


@contextmanager
def bind_job_context(job_id: str, tenant_id: str):
    """Attach a job and its tenant to every log line emitted inside the block."""

    job_token = job_id_ctx.set(job_id)
    tenant_token = tenant_id_ctx.set(tenant_id)
    try:
        yield
    finally:
        job_id_ctx.reset(job_token)
        tenant_id_ctx.reset(tenant_token)


def configure_logging() -> None:
    """Install the JSON handler on the root logger; safe to call repeatedly."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(tenant_id)s %(job_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    # Provider SDK chatter drowns the per-job lines at INFO.
    for noisy in ("httpx", "httpcore", "aiokafka"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


logger = logging.getLogger("notifyhub")
