"""
Storefront Exception Hierarchy

Structured exception classes for the shipping subsystem. Every error carries
a code, message and details for logs, plus the HTTP status the API boundary
renders it with.

Exception Hierarchy:
    StorefrontError
    ├── ShippingError
    │   ├── CarrierAuthError
    │   ├── CarrierAPIError
    │   │   └── CarrierRejectedError
    │   ├── ShipmentPreconditionError
    │   └── NoCourierAvailableError
    ├── OrderNotFoundError
    ├── WebhookFailureNotFoundError
    └── StoreError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    """
    Base exception for all storefront errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        http_status: Status code used when the error reaches the API boundary
    """

    default_code: str = "STOREFRONT_ERROR"
    default_severity: str = "P2"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# SHIPPING ERRORS
# =============================================================================

class ShippingError(StorefrontError):
    """Base exception for shipping-related errors."""
    default_code = "SHIPPING_ERROR"
    default_severity = "P1"
    http_status = 400


class CarrierAuthError(ShippingError):
    """Carrier rejected our account credentials, or the login call failed."""
    default_code = "CARRIER_AUTH_FAILED"
    default_severity = "P0"
    http_status = 500


class CarrierAPIError(ShippingError):
    """
    Carrier answered with a non-2xx status, or could not be reached.

    The carrier's response body is kept verbatim in `body` (and `details`)
    so admins can see exactly what the carrier complained about.
    """
    default_code = "CARRIER_API_ERROR"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Any = None,
        **kwargs
    ):
        self.status = status
        self.body = body
        details = kwargs.pop("details", {})
        details.update({
            "carrier_status": status,
            "carrier_response": body,
        })
        super().__init__(message, details=details, **kwargs)

    @property
    def http_status(self) -> int:
        # Carrier rejected the request itself: the caller can fix and retry
        if self.status is not None and 400 <= self.status < 500:
            return 400
        return 500


class CarrierRejectedError(CarrierAPIError):
    """Carrier answered 2xx but refused the operation (no shipment id, no AWB)."""
    default_code = "CARRIER_REJECTED"

    @property
    def http_status(self) -> int:
        return 400


class ShipmentPreconditionError(ShippingError):
    """A lifecycle step was attempted before the step it depends on."""
    default_code = "SHIPMENT_PRECONDITION_FAILED"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        order_id: Optional[int] = None,
        required: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "required": required,
        })
        super().__init__(message, details=details, **kwargs)


class NoCourierAvailableError(ShippingError):
    """Carrier returned no courier able to take the shipment."""
    default_code = "NO_COURIER_AVAILABLE"
    default_severity = "P2"


# =============================================================================
# STORE ERRORS
# =============================================================================

class OrderNotFoundError(StorefrontError):
    """Order does not exist (or is not visible to the caller)."""
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"
    http_status = 404

    def __init__(self, order_id: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["order_id"] = order_id
        super().__init__(kwargs.pop("message", "Order not found"), details=details, **kwargs)


class StoreError(StorefrontError):
    """Database failure while reading or persisting order state."""
    default_code = "STORE_ERROR"
    default_severity = "P1"
    http_status = 500


class WebhookFailureNotFoundError(StorefrontError):
    """Dead-lettered webhook id does not exist."""
    default_code = "WEBHOOK_FAILURE_NOT_FOUND"
    default_severity = "P3"
    http_status = 404
