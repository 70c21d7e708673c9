"""HTTP surface for notification ingestion, ops views and the dispatcher workers."""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Header, HTTPException, Query

from notifyhub.common.config import settings
from notifyhub.common.db import SessionLocal
from notifyhub.common.errors import InvalidTransitionError, ValidationError
from notifyhub.common.http import enforce_api_key, install_request_middleware
from notifyhub.common.logging import configure_logging
from notifyhub.common.metrics import metrics_response
from notifyhub.common.rate_limit import build_limiter
from notifyhub.common.startup import log_startup_config
from notifyhub.common.tracing import instrument_app, setup_tracing
from notifyhub.services.dispatch.queue import DispatchQueue
from notifyhub.services.dispatch.schemas import (
    DeliveryRecordResponse,
    EnqueueRequest,
    EnqueueResponse,
    JobDetailResponse,
    JobResponse,
    QueueDepthResponse,
    StatsResponse,
)
from notifyhub.services.dispatch.service import NotificationDispatcher
from notifyhub.services.providers.registry import build_registry
from notifyhub.services.templates.engine import TemplateEngine, TemplateStore
from notifyhub.services.tracker.service import DeliveryTracker

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "worker_count",
        "lease_seconds",
        "default_max_attempts",
        "rate_limit_per_minute",
    ],
)
tracker = DeliveryTracker(SessionLocal)
queue = DispatchQueue(SessionLocal, tracker)
registry = build_registry()
dispatcher = NotificationDispatcher(
    queue,
    TemplateEngine(TemplateStore(SessionLocal)),
    registry,
    limiter=build_limiter(),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the worker pool and the lifecycle consumer with the app lifecycle."""

    dispatcher.start()
    consumer_task = asyncio.create_task(dispatcher.consume_lifecycle())
    yield
    consumer_task.cancel()
    await dispatcher.stop()
    await registry.close()


app = FastAPI(title="notifyhub Dispatch", lifespan=lifespan)
install_request_middleware(app)
instrument_app(app)


@app.post("/notifications", response_model=EnqueueResponse)
def enqueue_notification(
    req: EnqueueRequest,
    x_api_key: str | None = Header(default=None),
):
    """Accept one notification job; repeated keys return the live job id."""

    enforce_api_key(x_api_key)
    try:
        result = queue.enqueue(req)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return EnqueueResponse(job_id=result.job_id, created=result.created)


@app.get("/notifications/{job_id}", response_model=JobDetailResponse)
def get_notification(job_id: str, x_api_key: str | None = Header(default=None)):
    """Job state plus its delivery history."""

    enforce_api_key(x_api_key)
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    detail = JobDetailResponse.model_validate(job, from_attributes=True)
    detail.history = [DeliveryRecordResponse.model_validate(record) for record in tracker.history(job_id)]
    return detail


@app.get("/ops/queue", response_model=QueueDepthResponse)
def queue_depth(x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return QueueDepthResponse(**queue.depth())


@app.get("/ops/dead-letters", response_model=list[JobResponse])
def dead_letters(
    tenant_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    x_api_key: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    return queue.dead_letters(tenant_id=tenant_id, limit=limit)


@app.post("/ops/dead-letters/{job_id}/replay", response_model=JobResponse)
def replay_dead_letter(
    job_id: str,
    x_api_key: str | None = Header(default=None),
    x_operator: str | None = Header(default=None),
):
    """Operator replay of one dead job with a fresh attempt budget."""

    enforce_api_key(x_api_key)
    try:
        return queue.replay_dead_letter(job_id, operator=x_operator or "operator")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=404 if "not found" in str(exc) else 409, detail=str(exc)) from exc


@app.get("/ops/stats/{tenant_id}", response_model=StatsResponse)
def delivery_stats(
    tenant_id: str,
    window_hours: float = Query(default=24.0, gt=0, le=24 * 90),
    x_api_key: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    stats = tracker.aggregate_stats(tenant_id, timedelta(hours=window_hours))
    return StatsResponse(tenant_id=tenant_id, window_hours=window_hours, **stats)


@app.get("/ops/providers/health")
async def providers_health(x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return await registry.health()


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
