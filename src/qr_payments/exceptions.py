"""
Error taxonomy for the gateway core.

Each error carries a stable ``error_code`` so the HTTP adapter can translate it
without inspecting messages.
"""
from typing import Optional, Dict, Any


class QRPaymentsError(Exception):
    """Base exception for all gateway-core errors."""

    error_code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(QRPaymentsError):
    """
    Request failed local validation.

    Raised before any transaction row exists, e.g. OTP/QR data shorter than
    the gateway minimum or a non-positive amount.
    """

    error_code = "validation_error"


class ConfigurationError(QRPaymentsError):
    """Gateway credentials are missing, hold the placeholder, or are malformed."""

    error_code = "configuration_error"


class NetworkError(QRPaymentsError):
    """The gateway could not be reached. Transient, retried by the orchestrator."""

    error_code = "network_error"


class GatewayTimeoutError(NetworkError, TimeoutError):
    """No response from the gateway within the per-call timeout."""

    error_code = "timeout"


class GatewayBusinessError(QRPaymentsError):
    """
    Well-formed gateway response carrying a non-zero error code.

    Recorded as a failed payment and never retried.
    """

    error_code = "gateway_declined"

    def __init__(
        self,
        gateway_code: int,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.gateway_code = gateway_code
        super().__init__(message, details)


class InternalError(QRPaymentsError):
    """Unexpected failure inside the payment flow."""

    error_code = "internal_error"


class IdentifierGenerationError(InternalError):
    """No unused order id could be generated within the attempt bound."""

    error_code = "identifier_exhausted"


class InvalidTransitionError(InternalError):
    """A status write was attempted that the transition table does not allow."""

    error_code = "invalid_transition"

    def __init__(self, current: Optional[str], requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Transition {current} -> {requested} is not allowed",
            {"current_status": current, "requested_status": requested},
        )


class TransactionNotFoundError(QRPaymentsError):
    """No transaction matches the given identifier."""

    error_code = "not_found"
