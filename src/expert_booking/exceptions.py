"""Custom exception classes for the booking engine."""

from typing import Any, Dict, Optional


class APIException(Exception):
    """Base exception for all booking engine errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class AuthorizationError(APIException):
    """Exception raised when an actor touches a resource it does not own."""

    def __init__(
        self,
        message: str = "Insufficient permissions",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=403,
            code="AUTHORIZATION_ERROR",
            details=details,
        )


class ValidationError(APIException):
    """Exception raised for validation errors."""

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if errors:
            error_details["validation_errors"] = errors
        super().__init__(
            message=message,
            status_code=422,
            code="VALIDATION_ERROR",
            details=error_details,
        )


class NotFoundError(APIException):
    """Exception raised when a resource is not found."""

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        message = f"{resource} not found"
        if resource_id:
            message += f" with id: {resource_id}"
        error_details = details or {}
        error_details["resource"] = resource
        if resource_id:
            error_details["resource_id"] = resource_id
        super().__init__(
            message=message,
            status_code=404,
            code="NOT_FOUND",
            details=error_details,
        )


class ConflictError(APIException):
    """Exception raised when a resource conflict occurs."""

    def __init__(
        self,
        message: str = "Resource conflict",
        code: str = "CONFLICT",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=409,
            code=code,
            details=details,
        )


class SlotConflictError(ConflictError):
    """The requested interval overlaps a pending or confirmed appointment."""

    def __init__(
        self,
        message: str = "The selected time slot is no longer available",
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details.setdefault("next_step", "refresh_slots")
        super().__init__(message=message, code="SLOT_CONFLICT", details=error_details)


class InvalidStateTransitionError(ConflictError):
    """An appointment cannot move from its current status to the requested one."""

    def __init__(
        self,
        current_status: str,
        target_status: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["current_status"] = current_status
        error_details["target_status"] = target_status
        super().__init__(
            message=f"Cannot move appointment from '{current_status}' to '{target_status}'",
            code="INVALID_STATE_TRANSITION",
            details=error_details,
        )


class ReservationExpiredError(APIException):
    """A pending reservation outlived its hold and can no longer be confirmed."""

    def __init__(
        self,
        appointment_id: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["appointment_id"] = appointment_id
        error_details.setdefault("next_step", "reserve_again")
        super().__init__(
            message="Reservation expired before payment was confirmed",
            status_code=410,
            code="RESERVATION_EXPIRED",
            details=error_details,
        )


class PaymentFailedError(APIException):
    """The gateway declined the charge; the reservation has been released."""

    def __init__(
        self,
        message: str = "Payment failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details.setdefault("next_step", "retry_payment")
        super().__init__(
            message=message,
            status_code=402,
            code="PAYMENT_FAILED",
            details=error_details,
        )


class PayoutAccountRequiredError(APIException):
    """The expert has no active payout account, so no booking can be charged."""

    def __init__(self, expert_id: str):
        super().__init__(
            message="Expert must set up payment processing first",
            status_code=409,
            code="PAYOUT_ACCOUNT_REQUIRED",
            details={"expert_id": expert_id},
        )


class PaymentTimeoutError(APIException):
    """The gateway did not answer within the configured bound."""

    def __init__(
        self,
        message: str = "Payment gateway timed out",
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details.setdefault("next_step", "retry_payment")
        super().__init__(
            message=message,
            status_code=504,
            code="PAYMENT_TIMEOUT",
            details=error_details,
        )


class GatewayUnavailableError(APIException):
    """The gateway is unreachable; nothing was committed on its side."""

    def __init__(
        self,
        message: str = "Payment gateway unavailable",
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details.setdefault("next_step", "retry_later")
        if retry_after:
            error_details["retry_after"] = retry_after
        super().__init__(
            message=message,
            status_code=503,
            code="GATEWAY_UNAVAILABLE",
            details=error_details,
        )


class InvariantViolationError(APIException):
    """A ledger invariant (overlap or amount split) would be broken.

    Raised instead of writing; never meant to be caught and ignored.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="INVARIANT_VIOLATION",
            details=details,
        )


class DatabaseError(APIException):
    """Exception raised for database-related errors."""

    def __init__(
        self,
        message: str = "Database operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="DATABASE_ERROR",
            details=details,
        )


class ExternalServiceError(APIException):
    """Exception raised when external service calls fail."""

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_message = message or f"External service '{service}' unavailable"
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=error_message,
            status_code=status_code,
            code="EXTERNAL_SERVICE_ERROR",
            details=error_details,
        )


class CalendarSyncError(Exception):
    """Calendar provider call failed; stored on the integration, never raised to bookers."""

    pass


class TokenRefreshError(CalendarSyncError):
    """OAuth token could not be refreshed."""

    pass
