# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the bulk mail queue.

This module exposes per-session delivery queues over HTTP:

- ``POST /bulk-email``: enqueue messages for a session and start sending
- ``GET /bulk-email?session_id=...``: poll the session status
- ``PUT /bulk-email``: pause or resume a session
- ``DELETE /bulk-email/{session_id}``: clear and drop a session
- ``GET /health`` and ``GET /metrics``

Queue endpoints are gated by the fixed-window :class:`RateLimiter` handed to
:func:`create_app`; every gated response carries ``X-RateLimit-*`` headers
and denied requests receive ``429`` with ``Retry-After``. When an API token
is configured every endpoint but ``/health`` requires ``X-API-Token``.

Example:
    Creating and running the API application::

        settings = load_settings()
        limiter = RateLimiter(settings.rate_limit.window_seconds, settings.rate_limit.limits)
        registry = QueueRegistry(lambda: DeliveryQueueManager(get_email_provider(settings)))
        app = create_app(registry, limiter, settings=settings)
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

import logging
from collections.abc import Callable
from typing import Any, AsyncContextManager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, ValidationError

from .config_loader import Settings
from .errors import ProviderNotConfiguredError
from .models import EmailAttachment, QueueStatusSnapshot
from .prometheus import QueueMetrics
from .rate_limit import RateLimiter, build_key, client_ip
from .sessions import QueueRegistry

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
DEFAULT_SENDER_NAME = "Bamboobot Certificates"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the ``X-API-Token`` header against the configured token.

    When no token is configured the check is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def rate_limited(category: str, route: str) -> Callable[..., Any]:
    """Dependency factory gating a route with the app rate limiter."""

    async def dependency(request: Request, response: Response) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        peer = request.client.host if request.client else None
        key = build_key(category, route, user_id=None, ip=client_ip(request.headers, peer))
        decision = limiter.rate_limit(key, category)
        headers = decision.headers()
        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {key}")
            raise HTTPException(status.HTTP_429_TOO_MANY_REQUESTS, "Too many requests", headers=headers)
        for name, value in headers.items():
            response.headers[name] = value

    return dependency


class BulkEmailConfig(BaseModel):
    """Sender settings shared by every message of a bulk request."""
    sender_name: str | None = None
    subject: str | None = None
    message: str | None = None


class BulkEmailEntry(BaseModel):
    """One recipient of a bulk request."""
    to: str
    sender_name: str | None = None
    subject: str | None = None
    html: str | None = None
    text: str | None = None
    attachments: list[EmailAttachment] | None = None


class BulkEmailRequest(BaseModel):
    session_id: str = Field(min_length=1)
    emails: list[BulkEmailEntry] | None = None
    config: BulkEmailConfig | None = None


class BulkEmailResponse(BaseModel):
    success: bool
    queue_length: int
    status: QueueStatusSnapshot


class QueueControlRequest(BaseModel):
    session_id: str | None = None
    action: str


class SuccessResponse(BaseModel):
    success: bool = True


def _to_params(entry: BulkEmailEntry, config: BulkEmailConfig, email_from: str) -> dict[str, Any]:
    sender_name = entry.sender_name or config.sender_name or DEFAULT_SENDER_NAME
    params: dict[str, Any] = {
        "to": entry.to,
        "from": f"{sender_name} <{email_from}>",
        "subject": entry.subject or config.subject,
        "html": entry.html or "",
        "text": entry.text,
        "attachments": entry.attachments,
    }
    if entry.html is None and entry.text is None:
        params["text"] = config.message
    return params


def create_app(
    registry: QueueRegistry,
    limiter: RateLimiter,
    *,
    settings: Settings | None = None,
    metrics: QueueMetrics | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    registry:
        Session registry owning the delivery queues.
    limiter:
        Process-wide rate limiter, constructed once at startup.
    settings:
        Loaded settings; supplies the API token and default sender address.
    metrics:
        Metrics exposed at ``/metrics``; normally the instance shared with
        the queues built by ``registry``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    settings = settings or Settings()
    api = FastAPI(title="Bulk Mail Queue", lifespan=lifespan)
    api.state.api_token = settings.server.api_token
    api.state.rate_limiter = limiter
    api.state.registry = registry
    api.state.metrics = metrics or QueueMetrics()
    email_from = settings.email.email_from

    router = APIRouter(prefix="/bulk-email", tags=["bulk-email"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        body = await request.body()
        logger.error(f"Validation error on {request.method} {request.url.path}")
        logger.error(f"Request body: {body.decode('utf-8', errors='replace')}")
        logger.error(f"Validation errors: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics_endpoint():
        """Expose Prometheus metrics collected by the queues."""
        return Response(content=api.state.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post(
        "",
        response_model=BulkEmailResponse,
        dependencies=[Depends(rate_limited("email", "/bulk-email"))],
    )
    async def send_bulk_email(payload: BulkEmailRequest):
        """Queue a batch of emails for a session and start sending."""
        if not payload.emails:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "No emails provided")
        config = payload.config
        if config is None or not (config.sender_name and config.subject and config.message):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Email configuration incomplete")

        try:
            queue = registry.get_or_create(payload.session_id)
        except ProviderNotConfiguredError as exc:
            logger.error(f"Bulk email rejected: {exc}")
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc)) from exc

        try:
            queue.add_items(_to_params(entry, config, email_from) for entry in payload.emails)
        except ValidationError as exc:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, exc.errors(include_url=False, include_context=False)) from exc

        if not queue.is_processing():
            queue.start_soon()

        return BulkEmailResponse(success=True, queue_length=len(queue), status=queue.status_snapshot())

    @router.get(
        "",
        response_model=QueueStatusSnapshot,
        response_model_exclude_none=True,
        dependencies=[Depends(rate_limited("api", "/bulk-email"))],
    )
    async def bulk_email_status(session_id: str | None = None):
        """Return the status snapshot of a session queue."""
        if not session_id:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Session ID required")
        queue = registry.get(session_id)
        if queue is None:
            return QueueStatusSnapshot.empty()
        return queue.status_snapshot()

    @router.put("", response_model=SuccessResponse)
    async def control_bulk_email(payload: QueueControlRequest):
        """Pause or resume a session queue."""
        if not payload.session_id:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Session ID required")
        queue = registry.get(payload.session_id)
        if queue is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "No active queue found")
        if payload.action == "pause":
            queue.pause()
        elif payload.action == "resume":
            queue.resume_soon()
        else:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid action")
        return SuccessResponse()

    @router.delete("/{session_id}", response_model=SuccessResponse)
    async def clear_bulk_email(session_id: str):
        """Clear a session queue and forget it."""
        if not await registry.remove(session_id):
            raise HTTPException(status.HTTP_404_NOT_FOUND, "No active queue found")
        return SuccessResponse()

    api.include_router(router)
    return api
