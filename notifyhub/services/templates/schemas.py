"""API request/response schemas for template administration."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TemplateCreateRequest(BaseModel):
    """Payload accepted by `POST /tenants/{tenant_id}/templates`."""

    name: str = Field(min_length=1, max_length=100)
    channel: str
    notification_type: str
    body_template: str = Field(min_length=1)
    subject_template: str | None = None
    required_variables: list[str] = Field(default_factory=list)
    active: bool = True
    is_default: bool = True


class TemplateUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    body_template: str | None = Field(default=None, min_length=1)
    subject_template: str | None = None
    required_variables: list[str] | None = None
    active: bool | None = None
    is_default: bool | None = None


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    name: str
    channel: str
    notification_type: str
    body_template: str
    subject_template: str | None
    required_variables: list[str]
    active: bool
    is_default: bool
    created_at: datetime
    updated_at: datetime
