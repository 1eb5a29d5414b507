"""Uniform ``{success, data?, error?}`` response envelope and exception handlers."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException

from ..domain.errors import ReasonCode

logger = logging.getLogger(__name__)

_CODE_BY_STATUS = {
    400: ReasonCode.VALIDATION_ERROR,
    401: ReasonCode.CREDENTIAL_MISSING,
    403: ReasonCode.ROLE_INSUFFICIENT,
    404: ReasonCode.NOT_FOUND,
    422: ReasonCode.VALIDATION_ERROR,
    429: ReasonCode.RATE_LIMITED,
}


class Envelope(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None


class ApiError(Exception):
    """Expected, client-facing failure carrying a machine-readable reason code."""

    def __init__(self, reason: ReasonCode, *, headers: dict[str, str] | None = None) -> None:
        super().__init__(reason.value)
        self.reason = reason
        self.headers = headers or {}

    @property
    def status_code(self) -> int:
        return self.reason.http_status


def success(data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"success": True, "data": data or {}}


def error_response(
    reason: ReasonCode, *, headers: dict[str, str] | None = None, status_code: int | None = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code or reason.http_status,
        content=Envelope(success=False, error=reason.value).model_dump(exclude_none=True),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for expected and unexpected failures."""

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        logger.info(
            "request rejected: reason=%s path=%s",
            exc.reason.value,
            request.url.path,
            extra={"reason": exc.reason.value, "status_code": exc.status_code},
        )
        return error_response(exc.reason, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        logger.info("request validation failed: path=%s", request.url.path)
        return error_response(ReasonCode.VALIDATION_ERROR)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        reason = _CODE_BY_STATUS.get(exc.status_code, ReasonCode.INTERNAL_ERROR)
        return error_response(reason, headers=exc.headers, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(
            "unhandled error on %s %s",
            request.method,
            request.url.path,
            extra={"method": request.method, "endpoint": request.url.path, "status_code": 500},
        )
        return error_response(ReasonCode.INTERNAL_ERROR)
