"""
JSON response envelope and error handling.

Every route answers `{success, message, data?, errors?}`. Validation failures
become 400, domain errors map to 400/404, anything uncaught becomes 500 with
the raw error message.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    status_code = 404


class QuantityLimitError(DomainError):
    pass


class InvalidTransitionError(DomainError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change status from {current} to {requested}")
        self.current = current
        self.requested = requested


class DuplicateReviewError(DomainError):
    pass


def success(message: str, data: Any = None, status_code: int = 200, **extra) -> JSONResponse:
    body: Dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def failure(status_code: int, message: str, errors: Optional[list] = None, **extra) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if errors is not None:
        body["errors"] = errors
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return failure(exc.status_code, str(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return failure(400, "Validation errors", errors=errors)


async def domain_exception_handler(request: Request, exc: DomainError):
    return failure(exc.status_code, exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return failure(500, "Internal server error", error=str(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(DomainError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
