"""FastAPI application entrypoint."""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from app.backend import exceptions
from app.backend.api import routes
from app.backend.config import get_settings
from app.common.logging import configure_logging, json_log, reset_request_id, set_request_id

configure_logging()

_error_logger = logging.getLogger("app.backend.errors")
_access_logger = logging.getLogger("app.backend.access")
_lifecycle_logger = logging.getLogger("app.backend.lifecycle")


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Run the session sweeper for the lifetime of the process."""

    sweeper = routes.get_sweeper()
    sweeper.start()
    json_log(_lifecycle_logger, logging.INFO, "app.startup", storage_dir=str(get_settings().storage_dir))
    try:
        yield
    finally:
        await sweeper.stop()
        await routes.close_http_client()
        json_log(_lifecycle_logger, logging.INFO, "app.shutdown")


app = FastAPI(title="Spatial Audio Studio", version="0.1.0", lifespan=lifespan)


def _log_error(request: Request, event: str, error: exceptions.ApiError, exc: Exception | None) -> None:
    """Log a rendered error; tracebacks are kept for server-side failures only."""

    server_side = error.status_code >= 500
    json_log(
        _error_logger,
        logging.ERROR if server_side else logging.WARNING,
        event,
        path=request.url.path,
        method=request.method,
        session_id=request.path_params.get("session_id"),
        status_code=error.status_code,
        error_code=error.error_code,
        error_message=error.message,
        stage=error.stage,
        hint=error.hint,
        exc_info=exc if server_side else None,
    )


def _render(request: Request, event: str, error: exceptions.ApiError, exc: Exception | None = None) -> JSONResponse:
    _log_error(request, event, error, exc)
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log the outcome of API calls."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        token = set_request_id(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            if request.url.path.startswith("/api"):
                json_log(
                    _access_logger,
                    logging.INFO,
                    "request.complete",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=int((time.perf_counter() - start) * 1000),
                )
        finally:
            reset_request_id(token)
        response.headers.setdefault("X-Request-ID", request_id)
        return response


app.add_middleware(RequestIDMiddleware)
app.include_router(routes.router)


@app.exception_handler(exceptions.ApiError)
async def handle_api_error(request: Request, exc: exceptions.ApiError) -> JSONResponse:
    return _render(request, "error.api", exc, exc)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    hint = None
    if get_settings().debug_mode:
        hint = "; ".join(filter(None, (err.get("msg", "") for err in exc.errors()))) or None
    return _render(request, "error.request.validation", exceptions.invalid_request(hint=hint), exc)


@app.exception_handler(StarletteHTTPException)
async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc, exceptions.ApiError):
        return await handle_api_error(request, exc)
    status_code = exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code == status.HTTP_404_NOT_FOUND:
        error = exceptions.resource_not_found()
    else:
        hint = str(exc.detail) if get_settings().debug_mode and exc.detail else None
        error = exceptions.http_error(
            status_code=status_code,
            message="An HTTP error occurred while processing the request.",
            hint=hint,
        )
    return _render(request, "error.http", error, exc)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    return _render(request, "error.unexpected", exceptions.internal_error(), exc)


__all__ = ["app", "lifespan"]
