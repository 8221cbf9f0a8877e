"""
Base Supplier Adapter Interface v1.0.0

- All supplier adapters implement this interface
- Adapters own the vendor wire format; nothing outside this package sees a
  raw vendor payload
- Each adapter provides its own:
  - Order creation
  - Order status polling
  - Status vocabulary (map_status)
  - Catalog calls where the vendor has them
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from dropship_engine.core.exceptions import ConfigurationError
from dropship_engine.core.http_client import SupplierHTTPClient
from dropship_engine.models.supplier import Supplier, SupplierStatus, SupplierType
from dropship_engine.models.supplier_order import SupplierOrderStatus
from dropship_engine.services.suppliers.token_repository import TokenRepository

logger = logging.getLogger(__name__)


# =============================================================================
# Supplier-Agnostic Data Classes
# =============================================================================

@dataclass(frozen=True)
class SupplierConfig:
    """Snapshot of the Supplier row an adapter is built from."""
    supplier_id: int
    name: str
    supplier_type: SupplierType
    status: SupplierStatus
    api_key: Optional[str] = None
    api_endpoint: Optional[str] = None
    account_email: Optional[str] = None

    @classmethod
    def from_model(cls, supplier: Supplier) -> "SupplierConfig":
        return cls(
            supplier_id=supplier.id,
            name=supplier.name,
            supplier_type=supplier.resolved_type,
            status=supplier.status,
            api_key=supplier.api_key,
            api_endpoint=supplier.api_endpoint,
            account_email=supplier.account_email,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_endpoint)

    @property
    def fingerprint(self) -> tuple:
        """Changes whenever a field that affects the wire client changes."""
        return (self.supplier_type, self.api_key, self.api_endpoint, self.account_email)


@dataclass
class ShippingAddress:
    name: str
    address1: str
    city: str
    postal_code: str
    country_code: str = "US"
    address2: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def first_name(self) -> str:
        return self.name.split(" ", 1)[0] if self.name else ""

    @property
    def last_name(self) -> str:
        parts = self.name.split(" ", 1) if self.name else []
        return parts[1] if len(parts) > 1 else ""


@dataclass
class OrderLineItem:
    product_id: str  # supplier's product id, any encoding
    quantity: int
    variant_id: Optional[str] = None  # supplier's variant id
    sku: Optional[str] = None
    name: Optional[str] = None
    unit_cost: Optional[Decimal] = None


@dataclass
class SupplierOrderRequest:
    order_number: str  # idempotency key; suppliers dedupe on it
    shipping_address: ShippingAddress
    line_items: List[OrderLineItem]
    customer_email: Optional[str] = None
    shipping_method: Optional[str] = None
    remark: Optional[str] = None


@dataclass
class SupplierOrderResponse:
    external_order_id: str
    raw_status: Optional[str] = None
    status: SupplierOrderStatus = SupplierOrderStatus.PROCESSING
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


@dataclass
class OrderStatusInfo:
    external_order_id: str
    raw_status: str
    status: SupplierOrderStatus
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


@dataclass
class SupplierCategory:
    category_id: str
    name: str
    parent_id: Optional[str] = None
    children: List["SupplierCategory"] = field(default_factory=list)


@dataclass
class CategoryListResult:
    categories: List[SupplierCategory]
    cached: bool = False
    stale: bool = False


@dataclass
class SupplierVariant:
    variant_id: str
    product_id: str
    name: Optional[str] = None
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    image_url: Optional[str] = None


@dataclass
class SupplierProduct:
    product_id: str  # structured "pid:<digits>:null" form
    name: str
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    image_url: Optional[str] = None
    category_id: Optional[str] = None
    description: Optional[str] = None
    variants: List[SupplierVariant] = field(default_factory=list)


@dataclass
class ProductSearchResult:
    products: List[SupplierProduct]
    total: int
    page: int
    page_size: int


@dataclass
class ShippingQuote:
    method: str
    cost: Optional[Decimal]
    currency: str = "USD"
    min_days: Optional[int] = None
    max_days: Optional[int] = None


# Vocabulary shared by every vendor. Adapters extend it with their own terms.
DEFAULT_STATUS_MAP: Dict[str, SupplierOrderStatus] = {
    "PENDING": SupplierOrderStatus.PENDING,
    "ON_HOLD": SupplierOrderStatus.PENDING,
    "PROCESSING": SupplierOrderStatus.PROCESSING,
    "PROCESSED": SupplierOrderStatus.PROCESSING,
    "SHIPPED": SupplierOrderStatus.SHIPPED,
    "DISPATCHED": SupplierOrderStatus.SHIPPED,
    "DELIVERED": SupplierOrderStatus.COMPLETED,
    "COMPLETED": SupplierOrderStatus.COMPLETED,
    "CANCELLED": SupplierOrderStatus.CANCELLED,
    "CANCELED": SupplierOrderStatus.CANCELLED,
    "CLOSED": SupplierOrderStatus.CANCELLED,
    "ERROR": SupplierOrderStatus.ERROR,
    "FAILED": SupplierOrderStatus.ERROR,
}


def text_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# =============================================================================
# Base Supplier Adapter
# =============================================================================

class BaseSupplierAdapter(ABC):
    """
    Abstract base class for all supplier adapters.

    One instance per supplier per process: the instance owns the supplier's
    SupplierHTTPClient, whose RateGate serializes every outbound call.
    """

    # Vendor-specific additions to DEFAULT_STATUS_MAP
    STATUS_MAP: Dict[str, SupplierOrderStatus] = {}

    # Used when the Supplier row has no endpoint
    DEFAULT_BASE_URL: Optional[str] = None

    def __init__(
        self,
        config: SupplierConfig,
        tokens: TokenRepository,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_request_interval: Optional[float] = None,
    ):
        self.config = config
        self.tokens = tokens
        base_url = config.api_endpoint or self.DEFAULT_BASE_URL
        if not base_url:
            raise ConfigurationError(
                f"Supplier {config.name} has no API endpoint",
                supplier_id=config.supplier_id,
            )
        self.http = SupplierHTTPClient(
            base_url=base_url,
            name=f"{config.supplier_type.value.lower()}:{config.supplier_id}",
            min_request_interval=min_request_interval,
            default_headers=self.default_headers(),
            transport=transport,
        )
        self._status_map = {**DEFAULT_STATUS_MAP, **self.STATUS_MAP}

    @property
    @abstractmethod
    def supplier_type(self) -> SupplierType:
        """Return the adapter tag this class is registered under."""
        pass

    @property
    def supplier_id(self) -> int:
        return self.config.supplier_id

    def default_headers(self) -> Dict[str, str]:
        """Static headers sent with every request (API-key auth goes here)."""
        return {"Content-Type": "application/json"}

    def map_status(self, raw_status: Optional[str]) -> SupplierOrderStatus:
        """Map a vendor status string to SupplierOrderStatus. Unknown -> UNKNOWN."""
        key = (raw_status or "").strip().upper().replace(" ", "_").replace("-", "_")
        status = self._status_map.get(key)
        if status is None:
            logger.warning(f"Unknown {self.supplier_type.value} status: {raw_status!r}, mapping to UNKNOWN")
            return SupplierOrderStatus.UNKNOWN
        return status

    def ensure_ready(self) -> None:
        """Raise ConfigurationError unless the supplier may be called."""
        if self.config.status != SupplierStatus.ACTIVE:
            raise ConfigurationError(
                f"Supplier {self.config.name} is not active",
                supplier_id=self.supplier_id,
            )
        if not self.config.has_credentials:
            raise ConfigurationError(
                f"Supplier {self.config.name} is missing API credentials",
                supplier_id=self.supplier_id,
            )

    @abstractmethod
    async def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResponse:
        """
        Submit an order to the supplier.

        Returns:
            SupplierOrderResponse with the supplier's order id

        Raises:
            SupplierError subclasses; nothing is retried here
        """
        pass

    @abstractmethod
    async def get_order_status(self, external_order_id: str) -> OrderStatusInfo:
        """Poll the supplier for one order's status and tracking."""
        pass

    async def get_categories(self) -> CategoryListResult:
        raise ConfigurationError(
            f"{self.supplier_type.value} adapter does not expose categories",
            supplier_id=self.supplier_id,
        )

    async def search_products(self, **filters) -> ProductSearchResult:
        raise ConfigurationError(
            f"{self.supplier_type.value} adapter does not support product search",
            supplier_id=self.supplier_id,
        )

    async def close(self) -> None:
        await self.http.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} supplier={self.supplier_id}>"
