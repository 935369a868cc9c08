"""
Courier Gateway Exception Hierarchy

Every carrier failure surfaces as one of these regardless of which carrier
produced it. All exceptions carry code, message and details for logging,
plus the carrier that triggered them and the carrier's raw payload for
diagnostics. The raw payload is never the primary message.

Exception Hierarchy:
    GatewayError
    ├── AuthenticationFailed
    ├── ServiceUnavailable      (transient)
    ├── RateLimited             (transient)
    ├── ValidationFailed
    │   └── CarrierNotConfigured
    ├── NotServiceable
    ├── WaybillExhausted
    ├── NotFound
    └── UnexpectedResponseShape
"""
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """
    Base exception for all gateway errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        carrier: Carrier code that triggered the error, if any
        raw: Raw carrier response attached for diagnostics
    """

    default_code: str = "GATEWAY_ERROR"
    default_severity: str = "P2"
    transient: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
        carrier: Optional[str] = None,
        raw: Any = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        self.carrier = carrier
        self.raw = raw
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "carrier": self.carrier,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, carrier={self.carrier!r}, message={self.message!r})"


class AuthenticationFailed(GatewayError):
    """Login, token refresh or credential rejection by the carrier."""
    default_code = "AUTHENTICATION_FAILED"
    default_severity = "P0"


class ServiceUnavailable(GatewayError):
    """Timeout, connection failure or 5xx from the carrier."""
    default_code = "SERVICE_UNAVAILABLE"
    default_severity = "P1"
    transient = True


class RateLimited(GatewayError):
    """Carrier asked us to slow down."""
    default_code = "RATE_LIMITED"
    transient = True

    def __init__(
        self,
        message: str,
        retry_after_seconds: Optional[float] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details["retry_after_seconds"] = retry_after_seconds
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, details=details, **kwargs)


class ValidationFailed(GatewayError):
    """Bad input: malformed pincode, weight out of bounds, rejected payload."""
    default_code = "VALIDATION_FAILED"
    default_severity = "P3"


class CarrierNotConfigured(ValidationFailed):
    """Requested carrier has no adapter or no credentials."""
    default_code = "CARRIER_NOT_CONFIGURED"


class NotServiceable(GatewayError):
    """Carrier does not serve the pincode or payment mode."""
    default_code = "NOT_SERVICEABLE"
    default_severity = "P3"

    def __init__(self, message: str, pincode: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["pincode"] = pincode
        super().__init__(message, details=details, **kwargs)


class WaybillExhausted(GatewayError):
    """Pool is empty and replenishment failed."""
    default_code = "WAYBILL_EXHAUSTED"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        requested: Optional[int] = None,
        available: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "requested": requested,
            "available": available,
        })
        super().__init__(message, details=details, **kwargs)


class NotFound(GatewayError):
    """Tracking or cancel on an id the carrier does not know."""
    default_code = "NOT_FOUND"
    default_severity = "P3"


class UnexpectedResponseShape(GatewayError):
    """Carrier response did not match its documented contract."""
    default_code = "UNEXPECTED_RESPONSE_SHAPE"
    default_severity = "P1"


def is_transient(error: BaseException) -> bool:
    """True for errors the gateway may retry."""
    return isinstance(error, GatewayError) and error.transient
