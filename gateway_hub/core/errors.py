"""
Error taxonomy for the gateway.

Every domain error carries an HTTP status and a stable machine-readable
code so the API layer can render it without knowing where it came from.
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Human readable message
            code: Machine readable error code (defaults to the class code)
            status_code: HTTP status (defaults to the class status)
            details: Extra context rendered alongside the message
        """
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for API responses."""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GatewayError):
    """Request failed domain validation."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(GatewayError):
    """Caller could not be authenticated."""

    status_code = 401
    code = "AUTHENTICATION_ERROR"


class AuthorizationError(GatewayError):
    """Caller is authenticated but not allowed."""

    status_code = 403
    code = "AUTHORIZATION_ERROR"


class NotFoundError(GatewayError):
    """Requested resource does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class InvalidTransitionError(GatewayError):
    """A status change is not allowed by the transaction state machine."""

    status_code = 409
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, current: str, target: str, transaction_id: Optional[str] = None):
        super().__init__(
            f"Cannot transition transaction from '{current}' to '{target}'",
            details={
                "current_status": current,
                "target_status": target,
                "transaction_id": transaction_id,
            },
        )
        self.current = current
        self.target = target
        self.transaction_id = transaction_id


class ConflictError(GatewayError):
    """Another operation holds the resource."""

    status_code = 409
    code = "CONFLICT"


class SignatureError(GatewayError):
    """Webhook signature could not be verified."""

    status_code = 400
    code = "INVALID_SIGNATURE"


class IntegrityError(GatewayError):
    """Stored token failed authentication on decryption."""

    status_code = 422
    code = "TOKEN_INTEGRITY_ERROR"


class PaymentProcessingError(GatewayError):
    """
    A provider call failed.

    ``transient`` marks failures worth retrying (timeouts, connection
    problems, rate limits, open circuits).
    """

    status_code = 502
    code = "PAYMENT_PROCESSING_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        error_code: Optional[str] = None,
        transient: bool = False,
        original_error: Optional[Exception] = None,
        transaction_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            details={
                "provider": provider,
                "provider_error_code": error_code,
                "transient": transient,
                "transaction_id": transaction_id,
            },
        )
        self.provider = provider
        self.error_code = error_code
        self.transient = transient
        self.original_error = original_error
        self.transaction_id = transaction_id

    def for_transaction(self, transaction_id: str) -> "PaymentProcessingError":
        """Attach the transaction id once it is known."""
        self.transaction_id = transaction_id
        self.details["transaction_id"] = transaction_id
        return self
