"""HTTP surfaces of the dispatch and inbound services."""

import pytest
from fastapi.testclient import TestClient

from conftest import TENANT, enqueue_request, sign_whatsapp, whatsapp_callback, whatsapp_reply

from notifyhub.services.dispatch import main as dispatch_main
from notifyhub.services.inbound import main as inbound_main
from notifyhub.services.inbound.service import InboundCommandProcessor
from notifyhub.services.providers.registry import ProviderRegistry
from notifyhub.services.templates import main as templates_main
from notifyhub.services.templates.service import TemplateService


HEADERS = {"x-api-key": "test-api-key"}


@pytest.fixture
def dispatch_client(monkeypatch, queue, tracker):
    monkeypatch.setattr(dispatch_main, "queue", queue)
    monkeypatch.setattr(dispatch_main, "tracker", tracker)
    return TestClient(dispatch_main.app)


@pytest.fixture
def inbound_client(monkeypatch, session_factory, whatsapp_adapter, tracker, queue, clock):
    registry = ProviderRegistry({"whatsapp": whatsapp_adapter})
    monkeypatch.setattr(inbound_main, "registry", registry)
    monkeypatch.setattr(
        inbound_main,
        "processor",
        InboundCommandProcessor(session_factory, registry, tracker, queue, clock=clock),
    )
    return TestClient(inbound_main.app)


def test_enqueue_requires_api_key(dispatch_client):
    response = dispatch_client.post("/notifications", json=enqueue_request())

    assert response.status_code == 401


def test_enqueue_is_idempotent(dispatch_client):
    first = dispatch_client.post("/notifications", json=enqueue_request(), headers=HEADERS)
    second = dispatch_client.post("/notifications", json=enqueue_request(), headers=HEADERS)

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.json() == {"job_id": first.json()["job_id"], "created": False}


def test_enqueue_rejects_malformed_request(dispatch_client):
    response = dispatch_client.post("/notifications", json=enqueue_request(channel="pigeon"), headers=HEADERS)

    assert response.status_code == 422


def test_job_detail_includes_history(dispatch_client, queue):
    job_id = dispatch_client.post("/notifications", json=enqueue_request(), headers=HEADERS).json()["job_id"]
    job = queue.lease("worker-a")[0]
    queue.begin_attempt(job)
    queue.mark_sent(job, "wamid.1")

    body = dispatch_client.get(f"/notifications/{job_id}", headers=HEADERS).json()

    assert body["status"] == "SENT"
    assert body["attempt_count"] == 1
    assert [record["status"] for record in body["history"]] == ["SENT"]
    assert dispatch_client.get("/notifications/missing", headers=HEADERS).status_code == 404


def test_ops_queue_and_dead_letter_replay(dispatch_client, queue):
    job_id = queue.enqueue(enqueue_request()).job_id

    assert dispatch_client.post(f"/ops/dead-letters/{job_id}/replay", headers=HEADERS).status_code == 409
    assert dispatch_client.post("/ops/dead-letters/missing/replay", headers=HEADERS).status_code == 404

    queue.mark_dead(queue.lease("worker-a")[0], "PERMANENT", "HTTP 400")
    assert dispatch_client.get("/ops/queue", headers=HEADERS).json()["dead"] == 1
    dead = dispatch_client.get("/ops/dead-letters", params={"tenant_id": TENANT}, headers=HEADERS).json()
    assert [job["id"] for job in dead] == [job_id]

    replayed = dispatch_client.post(
        f"/ops/dead-letters/{job_id}/replay", headers={**HEADERS, "x-operator": "ops@example.com"}
    )
    assert replayed.status_code == 200
    assert replayed.json()["status"] == "PENDING"
    assert dispatch_client.get("/ops/queue", headers=HEADERS).json()["pending"] == 1


def test_stats_endpoint(dispatch_client):
    response = dispatch_client.get(f"/ops/stats/{TENANT}", params={"window_hours": 12}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["sent"] == 0
    assert response.json()["window_hours"] == 12


def test_whatsapp_subscription_handshake(inbound_client):
    ok = inbound_client.get(
        "/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
    )
    denied = inbound_client.get(
        "/webhooks/whatsapp",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1158201444"},
    )

    assert ok.status_code == 200
    assert ok.text == "1158201444"
    assert denied.status_code == 403


def test_webhook_rejects_unsigned_callback(inbound_client):
    body = whatsapp_callback(messages=[whatsapp_reply("yes")])

    response = inbound_client.post(
        "/webhooks/whatsapp", content=body, headers={"X-Hub-Signature-256": "sha256=deadbeef"}
    )

    assert response.status_code == 403


def test_webhook_accepts_signed_callback(inbound_client):
    body = whatsapp_callback(messages=[whatsapp_reply("hello there")])

    response = inbound_client.post("/webhooks/whatsapp", content=body, headers={"X-Hub-Signature-256": sign_whatsapp(body)})

    assert response.status_code == 200
    assert response.json()["verified"] is True
    assert response.json()["events_seen"] == 1


def test_webhook_unknown_channel(inbound_client):
    assert inbound_client.post("/webhooks/fax", content=b"{}").status_code == 404


def test_health(dispatch_client, inbound_client):
    assert dispatch_client.get("/health").json() == {"ok": True}
    assert inbound_client.get("/health").json() == {"ok": True}


@pytest.fixture
def templates_client(monkeypatch, session_factory):
    monkeypatch.setattr(templates_main, "service", TemplateService(session_factory))
    return TestClient(templates_main.app)


def test_template_administration(templates_client):
    base = f"/tenants/{TENANT}/templates"

    seeded = templates_client.post(f"{base}/seed-defaults", headers=HEADERS)
    assert seeded.status_code == 200
    assert len(seeded.json()) == 14
    assert len(templates_client.get(base, params={"channel": "email"}, headers=HEADERS).json()) == 4

    created = templates_client.post(
        base,
        json={
            "name": "promo",
            "channel": "sms",
            "notification_type": "custom",
            "body_template": "Hi {{customer_name}}",
            "required_variables": ["customer_name"],
        },
        headers=HEADERS,
    )
    assert created.status_code == 201
    template_id = created.json()["id"]

    bad = templates_client.patch(
        f"{base}/{template_id}", json={"body_template": "Hi there"}, headers=HEADERS
    )
    assert bad.status_code == 400

    assert templates_client.delete(f"{base}/{template_id}", headers=HEADERS).status_code == 204
    assert templates_client.get(f"{base}/{template_id}", headers=HEADERS).status_code == 404


def test_trace_id_is_propagated(dispatch_client):
    given = dispatch_client.get("/health", headers={"X-Trace-Id": "trace-123"})
    generated = dispatch_client.get("/health")

    assert given.headers["X-Trace-Id"] == "trace-123"
    assert generated.headers["X-Trace-Id"]
