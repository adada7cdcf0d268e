"""
Domain errors for the turf booking backend.

Services raise these; the API layer turns them into JSON responses with the
matching HTTP status.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for all errors raised by the booking services."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DomainError):
    """Malformed input or entities that do not belong together."""

    status_code = status.HTTP_400_BAD_REQUEST


class DuplicateError(ValidationError):
    """A unique field already holds this value."""


class AuthorizationError(DomainError):
    """Caller lacks the role or does not own the resource."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(DomainError):
    """The resource is in a state that forbids the operation."""

    status_code = status.HTTP_409_CONFLICT


class SlotBusyError(ConflictError):
    """Another request held the slot lock for longer than we were willing to wait."""


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        body: Dict[str, Any] = {"detail": exc.message, "code": exc.code}
        if exc.details:
            body["details"] = jsonable_encoder(exc.details)
        return JSONResponse(body, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            {
                "detail": "Invalid request data",
                "code": "invalid_request",
                "errors": jsonable_encoder(exc.errors()),
            },
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_error",
            extra={"path": request.url.path, "error_type": type(exc).__name__},
        )
        return JSONResponse(
            {"detail": "Internal server error", "code": "internal_error"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
