from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", code: str = "NOT_FOUND"):
        super().__init__(message, code=code, status_code=status.HTTP_404_NOT_FOUND)


class TeacherNotFoundError(NotFoundError):
    def __init__(self, message: str = "Teacher not found"):
        super().__init__(message, code="TEACHER_NOT_FOUND")


class RecipientNotFoundError(NotFoundError):
    def __init__(self, message: str = "Recipient not found"):
        super().__init__(message, code="RECIPIENT_NOT_FOUND")


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", code: str = "CONFLICT", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class InvalidTransitionError(ConflictError):
    """The session is not in a state from which the requested status is reachable."""

    def __init__(self, current_status: str, requested_status: str, message: str | None = None):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            message or f"Cannot change session from '{current_status}' to '{requested_status}'",
            code="INVALID_TRANSITION",
            details={"current_status": current_status, "requested_status": requested_status},
        )


class AlreadyRatedError(ConflictError):
    def __init__(self, message: str = "Session already rated"):
        super().__init__(message, code="ALREADY_RATED")


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", code: str = "BAD_REQUEST", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientCreditsError(BadRequestError):
    """Expected business outcome: the balance does not cover the debit."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}",
            code="INSUFFICIENT_CREDITS",
            details={"required": required, "available": available, "shortfall": max(required - available, 0)},
        )


class SelfTransferError(BadRequestError):
    def __init__(self, message: str = "Cannot transfer credits to yourself"):
        super().__init__(message, code="SELF_TRANSFER")


class PastScheduleError(BadRequestError):
    def __init__(self, message: str = "Session must be scheduled for a future time"):
        super().__init__(message, code="PAST_SCHEDULE")


class SkillNotOfferedError(BadRequestError):
    def __init__(self, skill: str):
        super().__init__(f"Teacher does not offer this skill: {skill}", code="SKILL_NOT_OFFERED", details={"skill": skill})


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc, path=request.url.path)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
