"""Ingestion and ops schemas for the dispatch service."""

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from notifyhub.common.state_machine import CHANNELS, NOTIFICATION_TYPES


PHONE_RE = re.compile(r"^\+?[1-9]\d{7,14}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_address(channel: str, address: str) -> str:
    """Canonical recipient form: E.164 for phone channels, lowercase email."""

    address = address.strip()
    if channel == "email":
        if not EMAIL_RE.match(address):
            raise ValueError(f"invalid email address: {address!r}")
        return address.lower()
    digits = re.sub(r"[\s\-().]", "", address)
    if not PHONE_RE.match(digits):
        raise ValueError(f"invalid phone number: {address!r}")
    return digits if digits.startswith("+") else f"+{digits}"


class EnqueueRequest(BaseModel):
    """Payload accepted by `POST /notifications` and the lifecycle consumer.

    `template_name` defaults to the notification type; `custom` jobs must name
    their template explicitly.
    """

    tenant_id: str = Field(min_length=1)
    correlation_id: str = Field(min_length=1)
    notification_type: str
    channel: str
    recipient_address: str = Field(min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime | None = None
    template_name: str | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=20)

    @field_validator("channel")
    @classmethod
    def _known_channel(cls, value: str) -> str:
        if value not in CHANNELS:
            raise ValueError(f"unknown channel: {value}")
        return value

    @field_validator("notification_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification_type: {value}")
        return value

    @field_validator("scheduled_for")
    @classmethod
    def _aware_schedule(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _resolve_template_and_address(self) -> "EnqueueRequest":
        if self.template_name is None:
            if self.notification_type == "custom":
                raise ValueError("custom notifications require template_name")
            self.template_name = self.notification_type
        self.recipient_address = normalize_address(self.channel, self.recipient_address)
        return self


class LifecyclePayload(BaseModel):
    """Payload of `appointment.*` events published by the business layer.

    `recipients` maps channel -> address; one job is enqueued per entry.
    """

    appointment_at: datetime | None = None
    recipients: dict[str, str] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)

    @field_validator("appointment_at")
    @classmethod
    def _aware_appointment(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class EnqueueResponse(BaseModel):
    job_id: str
    created: bool


class DeliveryRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    status: str
    source: str
    occurred_at: datetime
    recorded_at: datetime
    out_of_order: bool
    detail: str | None


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    correlation_id: str
    channel: str
    notification_type: str
    template_name: str
    recipient_address: str
    status: str
    priority: int
    scheduled_for: datetime
    attempt_count: int
    max_attempts: int
    provider_message_id: str | None
    last_error_kind: str | None
    last_error: str | None
    last_attempt_at: datetime | None
    created_at: datetime


class JobDetailResponse(JobResponse):
    history: list[DeliveryRecordResponse] = Field(default_factory=list)


class QueueDepthResponse(BaseModel):
    pending: int
    scheduled: int
    in_flight: int
    failed: int
    dead: int


class StatsResponse(BaseModel):
    tenant_id: str
    window_hours: float
    sent: int
    delivered: int
    read: int
    failed: int
    delivery_rate: float
    read_rate: float
