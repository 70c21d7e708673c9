"""HTTP surface for tenant template administration."""

from fastapi import FastAPI, Header, HTTPException

from notifyhub.common.config import settings
from notifyhub.common.db import SessionLocal
from notifyhub.common.errors import ValidationError
from notifyhub.common.http import enforce_api_key, install_request_middleware
from notifyhub.common.logging import configure_logging
from notifyhub.common.metrics import metrics_response
from notifyhub.common.startup import log_startup_config
from notifyhub.common.tracing import instrument_app, setup_tracing
from notifyhub.services.templates.schemas import TemplateCreateRequest, TemplateResponse, TemplateUpdateRequest
from notifyhub.services.templates.service import TemplateService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings, ["service_name", "postgres_dsn", "api_key"])
service = TemplateService(SessionLocal)

app = FastAPI(title="notifyhub Templates")
install_request_middleware(app)
instrument_app(app)


@app.post("/tenants/{tenant_id}/templates", response_model=TemplateResponse, status_code=201)
def create_template(tenant_id: str, req: TemplateCreateRequest, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    try:
        return service.create(tenant_id, req)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/tenants/{tenant_id}/templates", response_model=list[TemplateResponse])
def list_templates(tenant_id: str, channel: str | None = None, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    return service.list_templates(tenant_id, channel=channel)


@app.post("/tenants/{tenant_id}/templates/seed-defaults", response_model=list[TemplateResponse])
def seed_default_templates(tenant_id: str, x_api_key: str | None = Header(default=None)):
    """Provision the built-in templates missing for this tenant."""

    enforce_api_key(x_api_key)
    return service.seed_defaults(tenant_id)


@app.get("/tenants/{tenant_id}/templates/{template_id}", response_model=TemplateResponse)
def get_template(tenant_id: str, template_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    template = service.get(tenant_id, template_id)
    if template is None:
        raise HTTPException(status_code=404, detail="template not found")
    return template


@app.patch("/tenants/{tenant_id}/templates/{template_id}", response_model=TemplateResponse)
def update_template(
    tenant_id: str,
    template_id: str,
    req: TemplateUpdateRequest,
    x_api_key: str | None = Header(default=None),
):
    enforce_api_key(x_api_key)
    try:
        template = service.update(tenant_id, template_id, req)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if template is None:
        raise HTTPException(status_code=404, detail="template not found")
    return template


@app.delete("/tenants/{tenant_id}/templates/{template_id}", status_code=204)
def delete_template(tenant_id: str, template_id: str, x_api_key: str | None = Header(default=None)):
    enforce_api_key(x_api_key)
    if not service.delete(tenant_id, template_id):
        raise HTTPException(status_code=404, detail="template not found")


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
