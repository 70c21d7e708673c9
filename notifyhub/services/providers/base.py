"""Uniform channel adapter contract.

Adapters translate one transport's wire format into `ProviderSendResult` and
`InboundEvent`. `send` and `health_check` never raise: transport errors are
raised internally as `ProviderError` subclasses and folded into the error kind
taxonomy here, so the dispatcher never branches on a specific provider.
"""

import hmac
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import perf_counter
from typing import Any

import httpx
from pydantic import BaseModel, Field

from notifyhub.common.config import settings
from notifyhub.common.errors import (
    MalformedCallbackError,
    PermanentProviderError,
    ProviderAuthenticationError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
)
from notifyhub.common.logging import logger
from notifyhub.common.metrics import notification_send_failures_total, provider_send_seconds
from notifyhub.services.templates.engine import RenderedMessage


INBOUND_EVENT_KINDS = ("DELIVERY_RECEIPT", "READ_RECEIPT", "INBOUND_REPLY")


class ProviderSendResult(BaseModel):
    """Tagged outcome of one send attempt."""

    success: bool
    provider_message_id: str | None = None
    error_kind: str | None = None
    error_detail: str | None = None
    retry_after: float | None = None

    @classmethod
    def ok(cls, provider_message_id: str) -> "ProviderSendResult":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failure(cls, error_kind: str, detail: str, retry_after: float | None = None) -> "ProviderSendResult":
        return cls(success=False, error_kind=error_kind, error_detail=detail, retry_after=retry_after)


class InboundEvent(BaseModel):
    """One decoded provider callback item.

    `delivery_id` is the provider-supplied identifier used for redelivery
    dedupe; `context_message_id` is the outbound message a reply refers to.
    """

    channel: str
    kind: str
    delivery_id: str
    provider_message_id: str | None = None
    context_message_id: str | None = None
    sender_address: str | None = None
    status: str | None = None
    text: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    verified: bool = False


def constant_time_compare(a: str | None, b: str | None) -> bool:
    """Compare two signatures in constant time; empty values never match."""

    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def parse_retry_after(value: str | None) -> float | None:
    """Decode a `Retry-After` header given as seconds or an HTTP date."""

    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def unix_to_datetime(value: Any) -> datetime:
    """Provider callbacks carry unix seconds; fall back to now when absent."""

    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


def callback_field(node: Any, key: str, kind: type, default: Any = None) -> Any:
    """Typed lookup into a decoded callback body.

    A missing key yields `default`; a present value of the wrong type makes the
    whole callback malformed.
    """

    if not isinstance(node, dict):
        raise MalformedCallbackError(f"callback node holding {key!r} is not an object")
    value = node.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise MalformedCallbackError(f"callback field {key!r} is not a {kind.__name__}")
    return value


def raise_for_status(response: httpx.Response, detail: str | None = None) -> None:
    """Map a non-2xx response onto the provider error taxonomy."""

    if response.is_success:
        return
    status = response.status_code
    message = detail or f"HTTP {status}: {response.text[:200]}"
    if status in (401, 403):
        raise ProviderAuthenticationError(message)
    if status == 429:
        raise RateLimitedError(message, retry_after=parse_retry_after(response.headers.get("Retry-After")))
    if status == 408 or status >= 500:
        raise TransientProviderError(message)
    raise PermanentProviderError(message)


class ProviderAdapter(ABC):
    """Base class for every channel transport.

    Each adapter owns one pooled `httpx.AsyncClient`; the client is safe for
    concurrent use by all dispatcher workers.
    """

    channel: str = ""
    signature_header: str = ""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float | None = None) -> None:
        self.client = client or httpx.AsyncClient(timeout=timeout or settings.provider_timeout_seconds)

    async def send(self, recipient_address: str, rendered: RenderedMessage) -> ProviderSendResult:
        start = perf_counter()
        try:
            message_id = await self._send(recipient_address, rendered)
            return ProviderSendResult.ok(message_id)
        except ProviderError as exc:
            result = ProviderSendResult.failure(exc.error_kind, exc.detail, exc.retry_after)
        except httpx.TimeoutException as exc:
            result = ProviderSendResult.failure("TRANSIENT", f"timeout: {exc}")
        except httpx.HTTPError as exc:
            result = ProviderSendResult.failure("TRANSIENT", f"transport error: {exc}")
        finally:
            provider_send_seconds.labels(service=settings.service_name, channel=self.channel).observe(
                max(0.0, perf_counter() - start)
            )
        notification_send_failures_total.labels(
            service=settings.service_name,
            channel=self.channel,
            error_kind=result.error_kind,
        ).inc()
        logger.warning(
            "provider_send_failed channel=%s error_kind=%s detail=%s",
            self.channel,
            result.error_kind,
            result.error_detail,
        )
        return result

    async def health_check(self) -> bool:
        try:
            return await self._health_check()
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("provider_health_failed channel=%s error=%s", self.channel, exc)
            return False

    async def close(self) -> None:
        await self.client.aclose()

    @abstractmethod
    async def _send(self, recipient_address: str, rendered: RenderedMessage) -> str:
        """Deliver one message and return the provider message id."""

    @abstractmethod
    async def _health_check(self) -> bool:
        """Probe the provider with the configured credentials."""

    @abstractmethod
    def verify_inbound_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        """Return True only for an authentic callback; fail closed otherwise."""

    @abstractmethod
    def parse_callback(self, raw_payload: bytes) -> list[InboundEvent]:
        """Decode a callback body, raising `MalformedCallbackError` when undecodable."""
