"""Shared fixtures: in-memory database, fake clock, fake Redis, scripted adapters."""

import hashlib
import hmac
import json
import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("SERVICE_NAME", "notifyhub-test")

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from notifyhub.common.db import Base
from notifyhub.common.outbox import OutboxEvent  # noqa: F401
from notifyhub.services.dispatch.backoff import BackoffPolicy
from notifyhub.services.dispatch.queue import DispatchQueue
from notifyhub.services.dispatch.service import NotificationDispatcher
from notifyhub.services.inbound.models import ProcessedCallback  # noqa: F401
from notifyhub.services.providers.base import ProviderAdapter
from notifyhub.services.providers.registry import ProviderRegistry
from notifyhub.services.providers.whatsapp import WhatsAppAdapter
from notifyhub.services.templates.engine import TemplateEngine, TemplateStore
from notifyhub.services.templates.service import TemplateService
from notifyhub.services.tracker.service import DeliveryTracker


TENANT = "tenant-a"
PHONE = "+5511999990000"
WHATSAPP_SECRET = "app-secret"
WHATSAPP_VERIFY_TOKEN = "verify-me"

APPOINTMENT_VARIABLES = {
    "customer_name": "Ana Souza",
    "appointment_date": "2026-03-05",
    "appointment_time": "14:30",
    "service_name": "Haircut",
    "company_name": "Studio Bela",
    "professional_name": "Carla",
    "company_phone": "+55 11 3333-0000",
    "company_address": "Rua das Flores 100",
}


class FakeClock:
    """Injectable `utcnow` replacement that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRedis:
    """In-memory stand-in for the hash and WATCH/MULTI commands the token bucket uses.

    `before_execute`, when set, runs right before a transaction commits so a
    test can slip a competing writer in between read and write.
    """

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.versions: dict[str, int] = {}
        self.before_execute = None

    def hmget(self, key, *fields):
        values = self.hashes.get(key, {})
        return [values.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({field: str(value) for field, value in mapping.items()})
        self.versions[key] = self.versions.get(key, 0) + 1

    def expire(self, key, seconds):
        self.ttls[key] = seconds

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, store: FakeRedis) -> None:
        self.store = store
        self.watched: dict[str, int] = {}
        self.commands = []
        self.buffering = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.reset()

    def reset(self) -> None:
        self.watched = {}
        self.commands = []
        self.buffering = False

    def watch(self, key) -> None:
        self.watched[key] = self.store.versions.get(key, 0)

    def multi(self) -> None:
        self.buffering = True

    def hmget(self, key, *fields):
        return self.store.hmget(key, *fields)

    def hset(self, key, mapping):
        self.commands.append(("hset", key, mapping))

    def expire(self, key, seconds):
        self.commands.append(("expire", key, seconds))

    def execute(self):
        try:
            hook, self.store.before_execute = self.store.before_execute, None
            if hook is not None:
                hook()
            if any(self.store.versions.get(key, 0) != version for key, version in self.watched.items()):
                raise redis.WatchError("watched key changed")
            for name, key, arg in self.commands:
                getattr(self.store, name)(key, arg)
        finally:
            self.reset()


class ScriptedAdapter(ProviderAdapter):
    """Adapter whose `_send` replays a script of message ids or provider errors."""

    signature_header = "X-Test-Signature"

    def __init__(self, script, channel: str = "whatsapp") -> None:
        super().__init__(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))))
        self.channel = channel
        self.script = list(script)
        self.calls = []

    async def _send(self, recipient_address, rendered):
        self.calls.append((recipient_address, rendered))
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    async def _health_check(self) -> bool:
        return True

    def verify_inbound_signature(self, raw_payload, signature_header) -> bool:
        return False

    def parse_callback(self, raw_payload):
        return []


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def tracker(session_factory, clock):
    return DeliveryTracker(session_factory, clock=clock)


@pytest.fixture
def queue(session_factory, tracker, clock):
    return DispatchQueue(session_factory, tracker, clock=clock, lease_seconds=60, default_max_attempts=3)


@pytest.fixture
def seeded_templates(session_factory):
    return TemplateService(session_factory).seed_defaults(TENANT)


@pytest.fixture
def template_engine(session_factory):
    return TemplateEngine(TemplateStore(session_factory))


@pytest.fixture
def make_dispatcher(queue, template_engine):
    def _make(adapter: ProviderAdapter, limiter=None) -> NotificationDispatcher:
        return NotificationDispatcher(
            queue,
            template_engine,
            ProviderRegistry({adapter.channel: adapter}),
            limiter=limiter,
            backoff=BackoffPolicy(base_seconds=2.0, cap_seconds=300.0, jitter_ratio=0.0),
            worker_count=2,
            poll_interval_seconds=0.01,
        )

    return _make


def enqueue_request(**overrides) -> dict:
    request = {
        "tenant_id": TENANT,
        "correlation_id": "appt-1",
        "notification_type": "confirmation",
        "channel": "whatsapp",
        "recipient_address": PHONE,
        "variables": dict(APPOINTMENT_VARIABLES),
    }
    request.update(overrides)
    return request


@pytest.fixture
def whatsapp_adapter():
    return WhatsAppAdapter(
        api_url="https://graph.test/v19.0",
        phone_number_id="1234",
        access_token="token",
        app_secret=WHATSAPP_SECRET,
        verify_token=WHATSAPP_VERIFY_TOKEN,
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )


def sign_whatsapp(body: bytes, secret: str = WHATSAPP_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def whatsapp_callback(statuses=(), messages=()) -> bytes:
    body = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {"messaging_product": "whatsapp", "statuses": list(statuses), "messages": list(messages)},
                    }
                ],
            }
        ],
    }
    return json.dumps(body).encode("utf-8")


def whatsapp_reply(text: str, message_id: str = "wamid.in.1", context_id: str | None = None) -> dict:
    message = {
        "from": PHONE.lstrip("+"),
        "id": message_id,
        "timestamp": "1772442000",
        "type": "text",
        "text": {"body": text},
    }
    if context_id:
        message["context"] = {"from": "15550001111", "id": context_id}
    return message


def whatsapp_status(message_id: str, status: str) -> dict:
    return {"id": message_id, "status": status, "timestamp": "1772442000", "recipient_id": PHONE.lstrip("+")}
