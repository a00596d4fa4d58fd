"""Errors of the telemetry service and their JSON HTTP responses."""

from __future__ import annotations

import logging
from typing import ClassVar

from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base of errors that map onto an HTTP status and a JSON error body."""

    status_code: ClassVar[int] = 500
    label: ClassVar[str] = "Application error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.label}: {self.detail}"

    @property
    def public_message(self) -> str:
        """The message shown to the client."""
        return self.detail


class DatabaseError(AppError):
    """A storage failure; its details are logged but not shown to clients."""

    label = "Database error"

    def __init__(self, error: BaseException | str) -> None:
        super().__init__(str(error))
        self.error = error

    @property
    def public_message(self) -> str:
        return "Database error occurred"


class InvalidRequestError(AppError):
    status_code = 400
    label = "Validation error"


class NotFoundError(AppError):
    status_code = 404
    label = "Not found"


class InternalError(AppError):
    status_code = 500
    label = "Internal server error"


def error_response(error: AppError) -> JSONResponse:
    """Render an error as ``{"error": message}`` with its status code."""
    if error.status_code >= 500:
        logger.error("%s", error)
    return JSONResponse(status_code=error.status_code, content={"error": error.public_message})