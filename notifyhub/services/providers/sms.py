"""SMS adapter speaking the Twilio REST API."""

import base64
import hashlib
import hmac
from urllib.parse import parse_qsl

import httpx

from notifyhub.common.config import settings
from notifyhub.common.errors import (
    MalformedCallbackError,
    PermanentProviderError,
    ProviderAuthenticationError,
    RateLimitedError,
    TransientProviderError,
)
from notifyhub.services.providers.base import (
    InboundEvent,
    ProviderAdapter,
    constant_time_compare,
    parse_retry_after,
    raise_for_status,
)
from notifyhub.services.templates.engine import RenderedMessage


AUTH_ERROR_CODES = {20003}
RATE_LIMIT_ERROR_CODES = {20429, 14107}
# Invalid or unreachable recipient, opted-out number.
PERMANENT_ERROR_CODES = {21211, 21408, 21610, 21612, 21614}

STATUS_MAP = {"delivered": "DELIVERED", "read": "READ", "failed": "FAILED", "undelivered": "FAILED"}


class TwilioSmsAdapter(ProviderAdapter):
    channel = "sms"
    signature_header = "X-Twilio-Signature"

    def __init__(
        self,
        api_url: str,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(client)
        self.api_url = api_url.rstrip("/")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.status_callback_url = status_callback_url

    def _raise_for_error(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            error = response.json()
        except ValueError:
            error = {}
        code = error.get("code")
        detail = f"HTTP {response.status_code} code={code}: {error.get('message', response.text[:200])}"
        if code in AUTH_ERROR_CODES:
            raise ProviderAuthenticationError(detail)
        if code in RATE_LIMIT_ERROR_CODES:
            raise RateLimitedError(detail, retry_after=parse_retry_after(response.headers.get("Retry-After")))
        if code in PERMANENT_ERROR_CODES:
            raise PermanentProviderError(detail)
        raise_for_status(response, detail)

    async def _send(self, recipient_address: str, rendered: RenderedMessage) -> str:
        if not self.account_sid or not self.auth_token or not self.from_number:
            raise ProviderAuthenticationError("twilio credentials not configured")
        data = {"To": recipient_address, "From": self.from_number, "Body": rendered.body}
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url
        response = await self.client.post(
            f"{self.api_url}/Accounts/{self.account_sid}/Messages.json",
            auth=(self.account_sid, self.auth_token),
            data=data,
        )
        self._raise_for_error(response)
        try:
            return response.json()["sid"]
        except (ValueError, KeyError) as exc:
            raise TransientProviderError(f"unexpected send response: {response.text[:200]}") from exc

    async def _health_check(self) -> bool:
        if not self.account_sid or not self.auth_token:
            return False
        response = await self.client.get(
            f"{self.api_url}/Accounts/{self.account_sid}.json",
            auth=(self.account_sid, self.auth_token),
        )
        return response.is_success

    def expected_signature(self, params: list[tuple[str, str]]) -> str:
        """Base64 HMAC-SHA1 over the webhook URL followed by sorted key/value pairs."""

        signed = self.status_callback_url + "".join(f"{key}{value}" for key, value in sorted(params))
        digest = hmac.new(self.auth_token.encode("utf-8"), signed.encode("utf-8"), hashlib.sha1).digest()
        return base64.b64encode(digest).decode("utf-8")

    def verify_inbound_signature(self, raw_payload: bytes, signature_header: str | None) -> bool:
        if not self.auth_token or not self.status_callback_url or not signature_header:
            return False
        try:
            params = parse_qsl(raw_payload.decode("utf-8"), keep_blank_values=True)
        except UnicodeDecodeError:
            return False
        return constant_time_compare(signature_header, self.expected_signature(params))

    def parse_callback(self, raw_payload: bytes) -> list[InboundEvent]:
        try:
            params = dict(parse_qsl(raw_payload.decode("utf-8"), keep_blank_values=True, strict_parsing=True))
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedCallbackError(f"undecodable sms callback: {exc}") from exc
        message_sid = params.get("MessageSid") or params.get("SmsSid")
        if not message_sid:
            raise MalformedCallbackError("sms callback without MessageSid")

        status = params.get("MessageStatus")
        if status is not None:
            mapped = STATUS_MAP.get(status)
            if mapped is None:
                return []
            return [
                InboundEvent(
                    channel=self.channel,
                    kind="READ_RECEIPT" if mapped == "READ" else "DELIVERY_RECEIPT",
                    delivery_id=f"{message_sid}:{status}",
                    provider_message_id=message_sid,
                    sender_address=params.get("To"),
                    status=mapped,
                    payload=params,
                )
            ]
        if "Body" in params:
            return [
                InboundEvent(
                    channel=self.channel,
                    kind="INBOUND_REPLY",
                    delivery_id=message_sid,
                    provider_message_id=message_sid,
                    sender_address=params.get("From"),
                    text=params["Body"],
                    payload=params,
                )
            ]
        return []


def build_sms_adapter() -> TwilioSmsAdapter:
    return TwilioSmsAdapter(
        api_url=settings.twilio_api_url,
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        status_callback_url=settings.twilio_status_callback_url,
    )
