"""FastAPI application factory and error mapping."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from transcription_engine.api.routes import router
from transcription_engine.jobs.service import TranscriptionService
from transcription_engine.utils.errors import (
    JobFailure,
    JobStartError,
    PollTimeoutError,
    TranscriptionError,
    TransientIOError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_KINDS: tuple[tuple[type[TranscriptionError], str, int], ...] = (
    (ValidationError, "validation", 422),
    (TransientIOError, "transient", 503),
    (JobStartError, "job_start", 502),
    (JobFailure, "job_failure", 502),
    (PollTimeoutError, "timeout", 504),
)


def _error_response(kind: str, detail: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": kind, "detail": detail}
    )


async def _transcription_error_handler(
    request: Request, exc: TranscriptionError
) -> JSONResponse:
    for error_type, kind, status_code in ERROR_KINDS:
        if isinstance(exc, error_type):
            break
    else:
        kind, status_code = "internal", 500

    log = logger.warning if status_code < 500 else logger.error
    log(
        "%s %s failed: %s",
        request.method,
        request.url.path,
        exc,
        extra={"job_id": exc.job_id, "error": str(exc)},
    )
    return _error_response(kind, str(exc), status_code)


async def _http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    kind = "not_found" if exc.status_code == 404 else "http_error"
    return _error_response(kind, str(exc.detail), exc.status_code)


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _error_response("validation", str(exc.errors()), 422)


def create_app(service: TranscriptionService | None = None) -> FastAPI:
    """Build the API application.

    Args:
        service: Preconstructed service. When None it is built from the
            environment at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = service is None
        app.state.service = service or TranscriptionService.from_env()
        try:
            yield
        finally:
            if owned:
                await app.state.service.close()

    app = FastAPI(title="Transcription Job Engine", lifespan=lifespan)
    if service is not None:
        app.state.service = service
    app.include_router(router)
    app.add_exception_handler(TranscriptionError, _transcription_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    return app
