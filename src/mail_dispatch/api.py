# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the mail dispatcher.

The HTTP surface is an operational companion to the in-process dispatcher:
it lets an operator (or another service) submit finished messages, drain
the staging table by hand, inspect what is waiting and scrape metrics.

Every endpoint except ``/health`` is protected by the ``X-API-Token``
header when a token is configured.

Example:
    Creating and running the API application::

        dispatcher = MessageDispatcher(settings, Persistence(settings.database_path))
        app = create_app(dispatcher, api_token="secret-token")
        uvicorn.run(app, host="127.0.0.1", port=8025)
"""

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .dispatcher import MessageDispatcher
from .errors import MailDispatchError, RateLimitExceeded, TransportError
from .message import parse_message

logger = logging.getLogger(__name__)

dispatcher: MessageDispatcher | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the check
    is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses."""
    ok: bool
    error: Optional[str] = None


class StatusResponse(CommandStatus):
    method: str
    staged: int
    rate_limiting: bool
    use_mailer_queue: bool


class SendPayload(BaseModel):
    """A finished RFC 2822 message."""
    message: str
    send_now: bool = False


class SendResponse(CommandStatus):
    status: Optional[str] = None
    reason: Optional[str] = None
    staging_id: Optional[int] = None


class DrainPayload(BaseModel):
    halt_on_error: bool = False


class DrainFailureInfo(BaseModel):
    id: int
    error: str


class DrainResponse(CommandStatus):
    sent: List[int] = []
    failed: List[DrainFailureInfo] = []
    remaining: List[int] = []


class StagedMessageInfo(BaseModel):
    id: int
    to: Optional[str] = None
    subject: Optional[str] = None
    message_id: Optional[str] = None


class StagedResponse(CommandStatus):
    messages: List[StagedMessageInfo]


ERROR_STATUS = {
    RateLimitExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    TransportError: status.HTTP_502_BAD_GATEWAY,
}


def _error_response(exc: MailDispatchError) -> JSONResponse:
    status_code = next(
        (code for exc_type, code in ERROR_STATUS.items() if isinstance(exc, exc_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return JSONResponse(status_code=status_code, content={"ok": False, "error": exc.code, "detail": str(exc)})


def _header(msg, name: str) -> str | None:
    value = msg.get(name)
    return None if value is None else str(value)


def _require_dispatcher() -> MessageDispatcher:
    if dispatcher is None:
        raise HTTPException(500, "Dispatcher not initialized")
    return dispatcher


def create_app(
    disp: MessageDispatcher,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        disp: The dispatcher serving every command.
        api_token: Optional secret required in ``X-API-Token``.
        lifespan: Optional lifespan context manager for startup/shutdown.
    """
    global dispatcher
    dispatcher = disp

    api = FastAPI(title="Mail Dispatch", lifespan=lifespan)
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(MailDispatchError)
    async def dispatch_error_handler(request: Request, exc: MailDispatchError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error_response(exc)

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def service_status():
        disp = _require_dispatcher()
        return StatusResponse(
            ok=True,
            method=disp.method.value,
            staged=await disp.persistence.count_staged(),
            rate_limiting=disp.rate_limiter.enabled,
            use_mailer_queue=disp.settings.use_mailer_queue,
        )

    @router.post("/send", response_model=SendResponse, response_model_exclude_none=True)
    async def send(payload: SendPayload):
        """Dispatch one message; staged or queued messages report ``deferred``."""
        disp = _require_dispatcher()
        result = await disp.send(payload.message, send_now=payload.send_now)
        return SendResponse(
            ok=True,
            status=result.status.value,
            reason=result.reason,
            staging_id=result.staging_id,
        )

    @router.post("/drain", response_model=DrainResponse, response_model_exclude_none=True)
    async def drain(payload: DrainPayload = DrainPayload()):
        """Replay staged messages now."""
        disp = _require_dispatcher()
        result = await disp.send_staged_mail(halt_on_error=payload.halt_on_error)
        return DrainResponse(
            ok=result.ok,
            sent=result.sent,
            failed=[DrainFailureInfo(id=f.id, error=str(f.error)) for f in result.failed],
            remaining=result.remaining,
        )

    @api.get("/staged", response_model=StagedResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def staged():
        """List messages waiting in the staging table."""
        disp = _require_dispatcher()
        messages = []
        for record in await disp.stager.staged():
            msg = parse_message(record.raw_message)
            messages.append(
                StagedMessageInfo(
                    id=record.id,
                    to=_header(msg, "To"),
                    subject=_header(msg, "Subject"),
                    message_id=_header(msg, "Message-ID"),
                )
            )
        return StagedResponse(ok=True, messages=messages)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        disp = _require_dispatcher()
        return Response(content=disp.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
