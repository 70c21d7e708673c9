"""HTTP plumbing shared by the FastAPI services."""

import hmac
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request

from notifyhub.common.config import settings
from notifyhub.common.logging import trace_id_ctx
from notifyhub.common.metrics import http_request_duration_seconds, http_requests_total


TRACE_HEADER = "X-Trace-Id"


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject ops/ingestion calls without the configured API key."""

    if not x_api_key or not hmac.compare_digest(x_api_key.encode("utf-8"), settings.api_key.encode("utf-8")):
        raise HTTPException(status_code=401, detail="invalid API key")


def install_request_middleware(app: FastAPI) -> None:
    """Bind a trace id per request and record request count and latency.

    The route template, not the raw path, is used as the metric label so job
    ids do not explode label cardinality.
    """

    @app.middleware("http")
    async def request_middleware(request: Request, call_next):
        trace_id = request.headers.get(TRACE_HEADER) or str(uuid4())
        token = trace_id_ctx.set(trace_id)
        start = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[TRACE_HEADER] = trace_id
            return response
        finally:
            route = getattr(request.scope.get("route"), "path", None) or "unmatched"
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=request.method,
            ).observe(max(0.0, perf_counter() - start))
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=request.method,
                status_code=str(status_code),
            ).inc()
            trace_id_ctx.reset(token)
