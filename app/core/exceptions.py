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
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Payment gateway


class GatewayUnavailable(AppError):
    """Gateway unreachable, timed out or answered 5xx. Retryable."""

    def __init__(self, message: str = "Payment gateway unavailable"):
        super().__init__(message, code="GATEWAY_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class GatewayInvalidRequest(AppError):
    """Gateway rejected the request (amount, currency, unknown payment)."""

    def __init__(self, message: str = "Payment gateway rejected the request", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="GATEWAY_INVALID_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details
        )


class UntrustedPaymentStatusError(Exception):
    """A payment status that did not come from the gateway client reached the order update path.

    Not an AppError: this is a programming error and must never be rendered as
    a client-facing 4xx.
    """


# Control panel


class PanelError(AppError):
    def __init__(
        self,
        message: str,
        code: str = "PANEL_ERROR",
        status_code: int = status.HTTP_502_BAD_GATEWAY,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)


class PanelUnavailable(PanelError):
    """Control panel unreachable or timed out after retries. Retryable."""

    def __init__(self, message: str = "Control panel unavailable"):
        super().__init__(message, code="PANEL_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class PanelCommandError(PanelError):
    """Control panel answered a command with a non-zero return code."""

    def __init__(self, command: str, return_code: str, message: str | None = None):
        self.command = command
        self.return_code = return_code
        super().__init__(
            message or f"{command} failed with code {return_code}",
            code="PANEL_COMMAND_FAILED",
            details={"command": command, "return_code": return_code},
        )


class PanelAlreadyExists(PanelCommandError):
    def __init__(self, command: str, name: str):
        self.name = name
        super().__init__(command, "4", f"{name} already exists")


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
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
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
