"""
Dropship Engine Exception Hierarchy

Structured exception classes for supplier integration, fan-out, dispatch and
reconciliation. All exceptions include code, message, and details so that
services can copy them into result objects and the SupplierOrder audit trail.

Exception Hierarchy:
    DropshipBaseError
    ├── SupplierError
    │   ├── RateLimitedError
    │   ├── AuthenticationFailedError
    │   ├── SupplierTimeoutError
    │   ├── SupplierTransportError
    │   ├── RemoteError
    │   ├── MalformedResponseError
    │   ├── ProductNotFoundError
    │   └── ExternalOrderNotFoundError
    ├── ConfigurationError
    └── RecordNotFoundError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class DropshipBaseError(Exception):
    """
    Base exception for all dropship engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "DROPSHIP_ERROR"
    default_severity: str = "P2"

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
# SUPPLIER API ERRORS
# =============================================================================

class SupplierError(DropshipBaseError):
    """Base exception for supplier API failures."""
    default_code = "SUPPLIER_ERROR"
    default_severity = "P1"


class RateLimitedError(SupplierError):
    """
    Supplier (or our own auth gate) refused the call for now.

    Always surfaced to the caller with the wait time; never retried in place.
    """
    default_code = "SUPPLIER_RATE_LIMITED"
    default_severity = "P2"

    def __init__(self, message: str, wait_seconds: float = 0, **kwargs):
        details = kwargs.pop("details", {})
        details["wait_seconds"] = wait_seconds
        self.wait_seconds = wait_seconds
        super().__init__(message, details=details, **kwargs)


class AuthenticationFailedError(SupplierError):
    """Supplier rejected our credentials or refresh token."""
    default_code = "SUPPLIER_AUTH_FAILED"
    default_severity = "P0"  # Auth failures block every call


class SupplierTimeoutError(SupplierError):
    """Call exceeded the hard per-request timeout."""
    default_code = "SUPPLIER_TIMEOUT"


class SupplierTransportError(SupplierError):
    """Network-level failure (DNS, connect, reset)."""
    default_code = "SUPPLIER_TRANSPORT_FAILED"


class RemoteError(SupplierError):
    """Non-2xx response, or a 2xx envelope reporting failure."""
    default_code = "SUPPLIER_REMOTE_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body_excerpt: Optional[str] = None,
        vendor_code: Optional[Any] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "status_code": status_code,
            "body_excerpt": body_excerpt,
            "vendor_code": vendor_code,
        })
        self.status_code = status_code
        self.body_excerpt = body_excerpt
        self.vendor_code = vendor_code
        super().__init__(message, details=details, **kwargs)


class MalformedResponseError(SupplierError):
    """Response was not JSON or lacked required fields."""
    default_code = "SUPPLIER_MALFORMED_RESPONSE"


class ProductNotFoundError(SupplierError):
    """Supplier has no product with the given id."""
    default_code = "SUPPLIER_PRODUCT_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, message: str, product_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["product_id"] = product_id
        super().__init__(message, details=details, **kwargs)


class ExternalOrderNotFoundError(SupplierError):
    """Supplier does not know the external order id."""
    default_code = "SUPPLIER_ORDER_NOT_FOUND"

    def __init__(self, message: str, external_order_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["external_order_id"] = external_order_id
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# LOCAL ERRORS
# =============================================================================

class ConfigurationError(DropshipBaseError):
    """Missing credentials, inactive supplier, or no adapter for a supplier type."""
    default_code = "DROPSHIP_CONFIGURATION_ERROR"
    default_severity = "P1"

    def __init__(self, message: str, supplier_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["supplier_id"] = supplier_id
        super().__init__(message, details=details, **kwargs)


class RecordNotFoundError(DropshipBaseError):
    """Unknown local Order / SupplierOrder / Supplier id."""
    default_code = "DROPSHIP_RECORD_NOT_FOUND"
    default_severity = "P3"
