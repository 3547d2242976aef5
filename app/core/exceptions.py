from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

PAYMENT_PATH_PREFIX = "/payment"


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


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Payment verification / reconciliation taxonomy


class SignatureInvalid(AppError):
    """Signature mismatch or payment not captured. Rejected, never retried."""

    def __init__(self, message: str = "Invalid payment signature", status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(message, code="SIGNATURE_INVALID", status_code=status_code)


class ConfigurationError(AppError):
    """Gateway credentials or secrets missing. Fatal for the request."""

    def __init__(self, message: str = "Payment gateway not configured"):
        super().__init__(message, code="CONFIGURATION_ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


class VerificationUnavailable(AppError):
    """Gateway status lookup timed out or failed in transport. Caller may retry."""

    def __init__(self, message: str = "Payment verification temporarily unavailable"):
        super().__init__(message, code="VERIFICATION_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class InvalidTransition(AppError):
    def __init__(self, current: str, target: str, axis: str = "order_status"):
        super().__init__(
            f"Cannot change {axis} from {current} to {target}",
            code="INVALID_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"axis": axis, "current": current, "target": target},
        )


class MalformedPayload(AppError):
    def __init__(self, message: str = "Malformed payload", details: dict[str, Any] | None = None):
        super().__init__(message, code="MALFORMED_PAYLOAD", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class AmountMismatch(AppError):
    """Amount captured at the gateway differs from the order total. Not retried."""

    def __init__(self, paid, expected):
        super().__init__(
            f"Paid amount {paid} does not match order total {expected}",
            code="AMOUNT_MISMATCH",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"paid": str(paid), "expected": str(expected)},
        )


class DuplicateOrderError(Exception):
    """Store-level unique index conflict; another writer created the order first."""


def _is_payment_path(request: Request) -> bool:
    return request.url.path.startswith(PAYMENT_PATH_PREFIX)


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    if _is_payment_path(request):
        # Checkout client reads {success, error}
        body: dict[str, Any] = {"success": False, "error": exc.message, "code": exc.code}
    else:
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
    if exc.status_code >= 500:
        from app.core.logging import get_logger
        get_logger(__name__).error("app_error", code=exc.code, message=exc.message, path=request.url.path)
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    if _is_payment_path(request):
        errors = [{"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")} for e in exc.errors()]
        first = errors[0] if errors else {"loc": [], "msg": "invalid"}
        message = f"Invalid request: {'.'.join(first['loc'][1:]) or 'body'} {first['msg']}".strip()
        return error_response(request, MalformedPayload(message, details={"errors": errors}))
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
    if _is_payment_path(request):
        body: dict[str, Any] = {"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"}
    else:
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
