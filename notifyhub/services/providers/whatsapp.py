"""Conversational messaging adapter (WhatsApp Cloud API)."""

import hashlib
import hmac
import json

import httpx

from notifyhub.common.config import settings
from notifyhub.common.errors import (
    MalformedCallbackError,
    PermanentProviderError,
    ProviderAuthenticationError,
    RateLimitedError,
    TransientProviderError,
)
from notifyhub.common.logging import logger
from notifyhub.services.providers.base import (
    InboundEvent,
    ProviderAdapter,
    callback_field,
    constant_time_compare,
    raise_for_status,
    unix_to_datetime,
)
from notifyhub.services.templates.engine import RenderedMessage


AUTH_ERROR_CODES = {190}
RATE_LIMIT_ERROR_CODES = {4, 80007, 130429, 131056}
# Recipient not on WhatsApp, outside the 24h window, or message undeliverable.
PERMANENT_ERROR_CODES = {100, 131008, 131021, 131026, 131047, 131051}

STATUS_MAP = {"delivered": "DELIVERED", "read": "READ", "failed": "FAILED"}


class WhatsAppAdapter(ProviderAdapter):
    channel = "whatsapp"
    signature_header = "X-Hub-Signature-256"

    def __init__(
        self,
        api_url: str,
        phone_number_id: str,
        access_token: str,
        app_secret: str,
        verify_token: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client)
        self.api_url = api_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.app_secret = app_secret
        self.verify_token = verify_token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    def _raise_for_error(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        code = error.get("code")
        detail = f"HTTP {response.status_code} code={code}: {error.get('message', response.text[:200])}"
        if code in AUTH_ERROR_CODES:
            raise ProviderAuthenticationError(detail)
        if code in RATE_LIMIT_ERROR_CODES:
            raise RateLimitedError(detail)
        if code in PERMANENT_ERROR_CODES:
            raise PermanentProviderError(detail)
        raise_for_status(response, detail)

    async def _send(self, recipient_address: str, rendered: RenderedMessage) -> str:
        if not self.access_token or not self.phone_number_id:
            raise ProviderAuthenticationError("whatsapp credentials not configured")
        response = await self.client.post(
            f"{self.api_url}/{self.phone_number_id}/messages",
            headers=self._headers(),
            json={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient_address.lstrip("+"),
                "type": "text",
                "text": {"preview_url": False, "body": rendered.body},
            },
        )
        self._raise_for_error(response)
        try:
            return response.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError) as exc:
            raise TransientProviderError(f"unexpected send response: {response.text[:200]}") from exc

    async def _health_check(self) -> bool:
        if not self.access_token or not self.phone_number_id:
            return False
        response = await self.client.get(f"{self.api_url}/{self.phone_number_id}", headers=self._headers())
        return response.is_success

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Webhook registration handshake; returns the challenge to echo or None."""

        if mode == "subscribe" and challenge and constant_time_compare(token, self.verify_token):
            return challenge
        return None

    def verify_inbound_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        if not self.app_secret or not signature_header or not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(self.app_secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
        return constant_time_compare(signature_header[len("sha256="):], expected)

    def parse_callback(self, raw_payload: bytes) -> list[InboundEvent]:
        try:
            body = json.loads(raw_payload)
        except ValueError as exc:
            raise MalformedCallbackError(f"undecodable whatsapp callback: {exc}") from exc
        entries = callback_field(body, "entry", list)
        if entries is None:
            raise MalformedCallbackError("whatsapp callback without entry")

        events: list[InboundEvent] = []
        for entry in entries:
            for change in callback_field(entry, "changes", list, []):
                value = callback_field(change, "value", dict, {})
                for status in callback_field(value, "statuses", list, []):
                    event = self._status_event(status)
                    if event is not None:
                        events.append(event)
                for message in callback_field(value, "messages", list, []):
                    event = self._reply_event(message)
                    if event is not None:
                        events.append(event)
        return events

    def _status_event(self, status: dict) -> InboundEvent | None:
        raw_status = callback_field(status, "status", str, "")
        message_id = callback_field(status, "id", str)
        mapped = STATUS_MAP.get(raw_status)
        if mapped is None or not message_id:
            return None
        recipient = callback_field(status, "recipient_id", str)
        return InboundEvent(
            channel=self.channel,
            kind="READ_RECEIPT" if mapped == "READ" else "DELIVERY_RECEIPT",
            delivery_id=f"{message_id}:{raw_status}",
            provider_message_id=message_id,
            sender_address=f"+{recipient}" if recipient else None,
            status=mapped,
            payload=status,
            occurred_at=unix_to_datetime(status.get("timestamp")),
        )

    def _reply_event(self, message: dict) -> InboundEvent | None:
        message_id = callback_field(message, "id", str)
        if not message_id:
            return None
        message_type = callback_field(message, "type", str)
        if message_type == "text":
            text = callback_field(callback_field(message, "text", dict, {}), "body", str)
        elif message_type == "button":
            text = callback_field(callback_field(message, "button", dict, {}), "text", str)
        elif message_type == "interactive":
            interactive = callback_field(message, "interactive", dict, {})
            choice = callback_field(interactive, "button_reply", dict) or callback_field(
                interactive, "list_reply", dict, {}
            )
            text = callback_field(choice, "title", str)
        else:
            logger.info("whatsapp_reply_ignored type=%s message_id=%s", message_type, message_id)
            return None
        sender = callback_field(message, "from", str)
        return InboundEvent(
            channel=self.channel,
            kind="INBOUND_REPLY",
            delivery_id=message_id,
            provider_message_id=message_id,
            context_message_id=callback_field(callback_field(message, "context", dict, {}), "id", str),
            sender_address=f"+{sender}" if sender else None,
            text=text,
            payload=message,
            occurred_at=unix_to_datetime(message.get("timestamp")),
        )


def build_whatsapp_adapter() -> WhatsAppAdapter:
    return WhatsAppAdapter(
        api_url=settings.whatsapp_api_url,
        phone_number_id=settings.whatsapp_phone_number_id,
        access_token=settings.whatsapp_access_token,
        app_secret=settings.whatsapp_app_secret,
        verify_token=settings.whatsapp_verify_token,
    )
