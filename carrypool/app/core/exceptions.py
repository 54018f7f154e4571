"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
Every assignment-engine error is recoverable by the caller and is surfaced
synchronously to the initiating request.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


# Assignment lifecycle errors

class InvalidStateError(AppException):
    """Raised when a transition is not legal from the current state."""

    def __init__(self, message: str, current_status: Any = None, error_code: str = "ERR_STATE_001"):
        details = {}
        if current_status is not None:
            details["current_status"] = getattr(current_status, "value", current_status)
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class AssignmentNotNegotiableError(InvalidStateError):
    """Raised when negotiating on a terminal or disputed assignment."""

    def __init__(self, current_status: Any):
        super().__init__(
            message=f"Assignment is not negotiable in status {getattr(current_status, 'value', current_status)}",
            current_status=current_status,
            error_code="ERR_STATE_002"
        )


class InvalidPriceError(AppException):
    """Raised for a non-positive price reaching the negotiation layer."""

    def __init__(self, price: Any):
        super().__init__(
            message="Proposed price must be positive",
            error_code="ERR_VALIDATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"price": price}
        )


class ConcurrentModificationError(AppException):
    """Raised when an optimistic-lock check fails. Caller must re-read and retry."""

    def __init__(self, message: str = "This assignment changed, please refresh", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class ChecklistIncompleteError(AppException):
    """Raised when a gated transition is attempted before the checklist is complete."""

    def __init__(self, event: Any, checklist_status: Any, missing_items: list):
        event_value = getattr(event, "value", event)
        super().__init__(
            message=f"Safety checklist for {event_value} is not complete",
            error_code="ERR_SAFETY_001",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "event": event_value,
                "checklist_status": getattr(checklist_status, "value", checklist_status),
                "missing_items": missing_items,
            }
        )


class ChecklistItemNotApplicableError(AppException):
    """Raised when a checklist item does not belong to the event."""

    def __init__(self, event: Any, item: Any):
        event_value = getattr(event, "value", event)
        item_value = getattr(item, "value", item)
        super().__init__(
            message=f"Item '{item_value}' is not part of the {event_value} checklist",
            error_code="ERR_SAFETY_002",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"event": event_value, "item": item_value}
        )


class PaymentAuthorizationError(AppException):
    """Raised when the payment gateway rejects an authorization."""

    def __init__(self, message: str = "Payment authorization was declined", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PAY_001",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details=details
        )


class SettlementPreconditionError(AppException):
    """Raised when release/refund is attempted without the required prior transaction state."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PAY_002",
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class SettlementGatewayError(AppException):
    """Raised when a gateway call exhausted its retries. Needs admin intervention."""

    def __init__(self, operation: str, attempts: int, reason: str):
        super().__init__(
            message=f"Payment gateway {operation} failed after {attempts} attempts",
            error_code="ERR_PAY_003",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"operation": operation, "attempts": attempts, "reason": reason}
        )


class CapacityExceededError(AppException):
    """Raised when a package does not fit the trip's remaining capacity."""

    def __init__(self, trip_id: int, required_g: int, available_g: int):
        super().__init__(
            message=f"Trip {trip_id} has {available_g}g available, package needs {required_g}g",
            error_code="ERR_CAPACITY_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"trip_id": trip_id, "required_g": required_g, "available_g": available_g}
        )


class PackageNotAcceptedError(AppException):
    """Raised when a trip does not accept the package type or dimensions."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_CAPACITY_002",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {key: value for key, value in error.items() if key != "ctx"}
                    for error in exc.errors()
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )


async def stale_data_handler(request: Request, exc: Exception) -> JSONResponse:
    """Optimistic-lock failures that escaped a service-level commit."""
    logger.info("Stale data on %s: %s", request.url.path, exc)
    return await app_exception_handler(request, ConcurrentModificationError())
