from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.schemas.common import ErrorResponse


log = logging.getLogger(__name__)


class DomainError(Exception):
    """
    Base for every error the listing service surfaces to callers.
    Carries a stable machine code, a human message and the HTTP status the API maps it to.
    """

    code = "domain_error"
    http_status = 400

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(code=self.code, message=self.message, details=self.details)


class ValidationError(DomainError):
    code = "validation_error"
    http_status = 422


class AuthenticationError(DomainError):
    code = "unauthenticated"
    http_status = 401


class AuthorizationError(DomainError):
    code = "forbidden"
    http_status = 403


class NotFoundError(DomainError):
    code = "not_found"
    http_status = 404


class InvalidStateError(DomainError):
    code = "invalid_state"
    http_status = 409

    def __init__(self, message: str, *, current_state: str, details: list[dict[str, Any]] | None = None):
        super().__init__(message, details=[{"current_state": current_state}, *(details or [])])
        self.current_state = current_state


class ConflictError(DomainError):
    code = "conflict"
    http_status = 409

    def __init__(self, message: str = "Listing was modified concurrently; refresh and retry", **kw: Any):
        super().__init__(message, **kw)


class StorageError(DomainError):
    code = "storage_unavailable"
    http_status = 503

    def __init__(self, message: str = "Temporary failure, please retry later", **kw: Any):
        super().__init__(message, **kw)


async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if isinstance(exc, StorageError):
        log.error("storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=exc.http_status, content=exc.to_response().model_dump())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    body = ErrorResponse(code=ValidationError.code, message="Request validation failed", details=details)
    return JSONResponse(status_code=ValidationError.http_status, content=body.model_dump())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
