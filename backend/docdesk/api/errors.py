"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

from docdesk.domain.chat.exceptions import ChatError, InternalError, UpstreamFailureError
from docdesk.infra.postgres import STORE_ERRORS
from docdesk.obs.logging import current_request_id

logger = logging.getLogger(__name__)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        payload = {"detail": exc.detail, "request_id": current_request_id()}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = {
            "detail": "validation_error",
            "kind": "invalid_argument",
            "errors": exc.errors(),
            "request_id": current_request_id(),
        }
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(ChatError)
    async def chat_exc_handler(request: Request, exc: ChatError):  # type: ignore[override]
        payload = {"detail": exc.detail, "kind": exc.kind, "request_id": current_request_id()}
        return JSONResponse(status_code=exc.status_code, content=payload)

    async def store_exc_handler(request: Request, exc: Exception):
        logger.warning("store failure", extra={"path": request.url.path, "error": repr(exc)})
        upstream = UpstreamFailureError()
        payload = {"detail": upstream.detail, "kind": upstream.kind, "request_id": current_request_id()}
        return JSONResponse(status_code=upstream.status_code, content=payload)

    for error_type in (*STORE_ERRORS, RedisError):
        app.add_exception_handler(error_type, store_exc_handler)

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.error("unhandled error", extra={"path": request.url.path}, exc_info=exc)
        internal = InternalError()
        payload = {"detail": internal.detail, "kind": internal.kind, "request_id": current_request_id()}
        return JSONResponse(status_code=internal.status_code, content=payload)
