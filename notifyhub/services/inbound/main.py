"""Provider webhook endpoints plus the domain-event outbox publisher."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from notifyhub.common.config import settings
from notifyhub.common.db import SessionLocal
from notifyhub.common.errors import ConfigurationError
from notifyhub.common.http import install_request_middleware
from notifyhub.common.logging import configure_logging, logger
from notifyhub.common.metrics import metrics_response
from notifyhub.common.outbox import OutboxPublisher
from notifyhub.common.startup import log_startup_config
from notifyhub.common.tracing import instrument_app, setup_tracing
from notifyhub.services.dispatch.queue import DispatchQueue
from notifyhub.services.inbound.service import InboundCommandProcessor
from notifyhub.services.providers.registry import build_registry
from notifyhub.services.tracker.service import DeliveryTracker

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "whatsapp_app_secret",
        "twilio_status_callback_url",
        "email_webhook_secret",
        "callback_dedupe_ttl_seconds",
    ],
)
registry = build_registry()
tracker = DeliveryTracker(SessionLocal)
processor = InboundCommandProcessor(SessionLocal, registry, tracker, DispatchQueue(SessionLocal, tracker))
publisher = OutboxPublisher(SessionLocal, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and dedupe-cache purge with app lifecycle."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    purge_task = asyncio.create_task(processor.run_purge_forever())
    yield
    publisher_task.cancel()
    purge_task.cancel()
    await publisher.kafka.close()
    await registry.close()


app = FastAPI(title="notifyhub Inbound", lifespan=lifespan)
install_request_middleware(app)
instrument_app(app)


@app.get("/webhooks/whatsapp", response_class=PlainTextResponse)
def whatsapp_subscription(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    """Webhook registration handshake: echo the challenge for a matching token."""

    answer = registry.get("whatsapp").verify_subscription(mode, token, challenge)
    if answer is None:
        logger.warning("whatsapp_subscription_rejected mode=%s", mode)
        raise HTTPException(status_code=403, detail="verification failed")
    return answer


@app.post("/webhooks/{channel}")
async def provider_callback(channel: str, request: Request):
    """Accept one provider callback.

    Unverified callbacks get 403; everything else is acknowledged with 200 so
    providers do not keep redelivering payloads we already dropped.
    """

    raw_payload = await request.body()
    try:
        adapter = registry.get(channel)
    except ConfigurationError as exc:
        raise HTTPException(status_code=404, detail="unknown channel") from exc
    outcome = processor.handle_callback(channel, raw_payload, request.headers.get(adapter.signature_header))
    if not outcome.verified:
        raise HTTPException(status_code=403, detail="signature verification failed")
    return outcome.model_dump()


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
