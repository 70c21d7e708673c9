"""Email adapter for a SendGrid v3 style mail API.

Event webhooks are signed as `t=<unix>,v1=<hex>` where the MAC is
HMAC-SHA256(secret, "<t>.<body>"); stale timestamps are rejected to stop
replayed callbacks.
"""

import hashlib
import hmac
import json
from time import time

import httpx

from notifyhub.common.config import settings
from notifyhub.common.errors import MalformedCallbackError, ProviderAuthenticationError, TransientProviderError
from notifyhub.services.providers.base import (
    InboundEvent,
    ProviderAdapter,
    callback_field,
    constant_time_compare,
    raise_for_status,
    unix_to_datetime,
)
from notifyhub.services.templates.engine import RenderedMessage


EVENT_MAP = {"delivered": "DELIVERED", "open": "READ", "bounce": "FAILED", "dropped": "FAILED"}


def parse_signature_header(header: str) -> dict[str, str]:
    parts = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    return parts


class EmailAdapter(ProviderAdapter):
    channel = "email"
    signature_header = "X-Email-Signature"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        from_name: str,
        webhook_secret: str,
        max_age_seconds: int = 300,
        client: httpx.AsyncClient | None = None,
        clock=time,
    ) -> None:
        super().__init__(client)
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.webhook_secret = webhook_secret
        self.max_age_seconds = max_age_seconds
        self.clock = clock

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def _send(self, recipient_address: str, rendered: RenderedMessage) -> str:
        if not self.api_key:
            raise ProviderAuthenticationError("email api key not configured")
        response = await self.client.post(
            f"{self.api_url}/v3/mail/send",
            headers=self._headers(),
            json={
                "personalizations": [{"to": [{"email": recipient_address}]}],
                "from": {"email": self.from_address, "name": self.from_name},
                "subject": rendered.subject or "",
                "content": [{"type": "text/html", "value": rendered.body}],
            },
        )
        raise_for_status(response)
        message_id = response.headers.get("X-Message-Id")
        if not message_id:
            raise TransientProviderError("mail accepted without X-Message-Id")
        return message_id

    async def _health_check(self) -> bool:
        if not self.api_key:
            return False
        response = await self.client.get(f"{self.api_url}/v3/scopes", headers=self._headers())
        return response.is_success

    def verify_inbound_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        if not self.webhook_secret or not signature_header:
            return False
        parts = parse_signature_header(signature_header)
        timestamp, signature = parts.get("t"), parts.get("v1")
        if not timestamp or not signature:
            return False
        try:
            age = abs(self.clock() - int(timestamp))
        except ValueError:
            return False
        if age > self.max_age_seconds:
            return False
        signed = timestamp.encode("utf-8") + b"." + raw_payload
        expected = hmac.new(self.webhook_secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return constant_time_compare(signature, expected)

    def parse_callback(self, raw_payload: bytes) -> list[InboundEvent]:
        try:
            items = json.loads(raw_payload)
        except ValueError as exc:
            raise MalformedCallbackError(f"undecodable email callback: {exc}") from exc
        if not isinstance(items, list):
            raise MalformedCallbackError("email callback is not a list of events")

        events: list[InboundEvent] = []
        for item in items:
            mapped = EVENT_MAP.get(callback_field(item, "event", str, ""))
            event_id = callback_field(item, "sg_event_id", str)
            message_id = callback_field(item, "sg_message_id", str, "").split(".")[0]
            if mapped is None or not event_id or not message_id:
                continue
            events.append(
                InboundEvent(
                    channel=self.channel,
                    kind="READ_RECEIPT" if mapped == "READ" else "DELIVERY_RECEIPT",
                    delivery_id=event_id,
                    provider_message_id=message_id,
                    sender_address=callback_field(item, "email", str),
                    status=mapped,
                    payload=item,
                    occurred_at=unix_to_datetime(item.get("timestamp")),
                )
            )
        return events


def build_email_adapter() -> EmailAdapter:
    return EmailAdapter(
        api_url=settings.email_api_url,
        api_key=settings.email_api_key,
        from_address=settings.email_from_address,
        from_name=settings.email_from_name,
        webhook_secret=settings.email_webhook_secret,
        max_age_seconds=settings.callback_max_age_seconds,
    )
