"""
CJ Dropshipping Adapter

API 2.0, REST + JSON. Every response is an envelope:
    {"code": 200, "result": true, "message": "...", "data": ...}

Auth:
- POST v1/authentication/getAccessToken {email, password=<API key>}
  CJ allows one of these per 5 minutes per account.
- POST v1/authentication/refreshAccessToken {refreshToken}
- Every other call sends the access token in the CJ-Access-Token header.

Limits:
- 1 request/second (QPS). Over the limit CJ answers HTTP 200 with
  code 1600200, which we raise as RateLimitedError.

Product ids: see product_ids.py. Catalog calls that take `pid` as a query
parameter want the bare digits; the freight call and order lines want the
structured "pid:<digits>:null" form.
"""
import asyncio
import logging
import re
import time
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import httpx

from dropship_engine.core.config import settings
from dropship_engine.core.exceptions import (
    AuthenticationFailedError,
    ConfigurationError,
    ExternalOrderNotFoundError,
    MalformedResponseError,
    ProductNotFoundError,
    RateLimitedError,
    RemoteError,
    SupplierError,
)
from dropship_engine.core.ttl_cache import TTLCache
from dropship_engine.core.utils import parse_vendor_datetime
from dropship_engine.models.supplier import SupplierType
from dropship_engine.models.supplier_order import SupplierOrderStatus
from dropship_engine.services.suppliers import register_adapter
from dropship_engine.services.suppliers.base import (
    BaseSupplierAdapter,
    CategoryListResult,
    OrderStatusInfo,
    ProductSearchResult,
    ShippingQuote,
    SupplierCategory,
    SupplierConfig,
    SupplierOrderRequest,
    SupplierOrderResponse,
    SupplierProduct,
    SupplierVariant,
    text_or_none,
)
from dropship_engine.services.suppliers.product_ids import normalize_product_id, numeric_product_id
from dropship_engine.services.suppliers.token_repository import TokenRepository

logger = logging.getLogger(__name__)

CJ_RATE_LIMIT_CODE = 1600200
CJ_TOKEN_HEADER = "CJ-Access-Token"
CATEGORY_CACHE_KEY = "categories"

_RETRY_SECONDS = re.compile(r"(\d+)\s*second", re.IGNORECASE)
_NOT_FOUND = ("not exist", "not found", "does not exist", "no data")


def _retry_after_from_message(message: str, default: float) -> float:
    match = _RETRY_SECONDS.search(message or "")
    return float(match.group(1)) if match else default


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        # CJ sometimes sends price ranges like "1.20 -- 3.40"; take the low end
        return Decimal(str(value).split("--")[0].strip())
    except (InvalidOperation, ValueError):
        return None


def _is_not_found(error: RemoteError) -> bool:
    text = (error.body_excerpt or error.message or "").lower()
    return any(marker in text for marker in _NOT_FOUND)


@register_adapter(SupplierType.CJ_DROPSHIPPING)
class CJDropshippingAdapter(BaseSupplierAdapter):
    """CJ Dropshipping: token lifecycle, catalog, freight, orders."""

    DEFAULT_BASE_URL = "https://developers.cjdropshipping.com/api2.0/"

    STATUS_MAP = {
        "CREATED": SupplierOrderStatus.PENDING,
        "UNPAID": SupplierOrderStatus.PENDING,
        "UNSHIPPED": SupplierOrderStatus.PROCESSING,
        "IN_TRANSIT": SupplierOrderStatus.SHIPPED,
    }

    def __init__(
        self,
        config: SupplierConfig,
        tokens: TokenRepository,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_request_interval: Optional[float] = None,
        cache_clock: Callable[[], float] = time.time,
    ):
        super().__init__(config, tokens, transport=transport, min_request_interval=min_request_interval)
        self._auth_lock = asyncio.Lock()
        self._category_cache = TTLCache(
            ttl_seconds=settings.SUPPLIER_CATEGORY_CACHE_TTL_SECONDS,
            max_size=1,
            clock=cache_clock,
            name="cj_categories",
        )

    @property
    def supplier_type(self) -> SupplierType:
        return SupplierType.CJ_DROPSHIPPING

    # =========================================================================
    # ENVELOPE
    # =========================================================================

    def _unwrap(self, payload: Any, path: str, rate_limit_wait: float = 1.0) -> Any:
        """Return envelope["data"] or raise the matching SupplierError."""
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"CJ {path}: expected JSON object, got {type(payload).__name__}")

        code = payload.get("code")
        message = str(payload.get("message") or "")

        if code == CJ_RATE_LIMIT_CODE or "qps limit" in message.lower() or "too many requests" in message.lower():
            wait = _retry_after_from_message(message, rate_limit_wait)
            logger.warning(f"[CJ] {path}: rate limited by vendor ({message!r}), retry after {wait:.0f}s")
            raise RateLimitedError(f"CJ rate limit on {path}: {message}", wait_seconds=wait)

        result = payload.get("result")
        if result is True or (result is None and code == 200):
            return payload.get("data")

        raise RemoteError(
            f"CJ {path} failed: {message or 'Unknown error'} (code={code})",
            body_excerpt=message[:200],
            vendor_code=code,
        )

    # =========================================================================
    # TOKENS
    # =========================================================================

    async def get_access_token(self) -> str:
        """
        Cached token -> refresh -> full login (gated) -> RateLimitedError.

        Serialized per adapter so concurrent callers never race a login.
        """
        async with self._auth_lock:
            token = await self.tokens.get_access_token(self.supplier_id)
            if token:
                return token

            refresh_token = await self.tokens.get_refresh_token(self.supplier_id)
            if refresh_token:
                try:
                    return await self._refresh_access_token(refresh_token)
                except RateLimitedError:
                    raise
                except SupplierError as e:
                    logger.warning(f"[CJ] Supplier {self.supplier_id}: refresh failed ({e.message}), trying full login")

            wait = await self.tokens.time_until_next_auth(self.supplier_id)
            if wait > 0:
                raise RateLimitedError(
                    f"CJ allows one authentication per "
                    f"{settings.SUPPLIER_AUTH_MIN_INTERVAL_SECONDS // 60} minutes; retry in {wait}s",
                    wait_seconds=wait,
                )
            return await self._authenticate()

    async def _authenticate(self) -> str:
        email = self.config.account_email or settings.CJ_ACCOUNT_EMAIL
        if not email or not self.config.api_key:
            raise ConfigurationError(
                f"CJ supplier {self.config.name} needs an account email and API key",
                supplier_id=self.supplier_id,
            )

        await self.tokens.record_auth_attempt(self.supplier_id)
        logger.info(f"[CJ] Supplier {self.supplier_id}: full authentication")

        path = "v1/authentication/getAccessToken"
        try:
            payload = await self.http.request_json(
                "POST", path, json={"email": email, "password": self.config.api_key}
            )
            data = self._unwrap(payload, path, rate_limit_wait=settings.SUPPLIER_AUTH_MIN_INTERVAL_SECONDS)
        except RemoteError as e:
            raise AuthenticationFailedError(f"CJ authentication failed: {e.message}", details=e.details) from e

        return await self._store_token_payload(data, path)

    async def _refresh_access_token(self, refresh_token: str) -> str:
        logger.info(f"[CJ] Supplier {self.supplier_id}: refreshing access token")
        path = "v1/authentication/refreshAccessToken"
        try:
            payload = await self.http.request_json("POST", path, json={"refreshToken": refresh_token})
            data = self._unwrap(payload, path)
        except RemoteError as e:
            raise AuthenticationFailedError(f"CJ token refresh failed: {e.message}", details=e.details) from e

        return await self._store_token_payload(data, path, previous_refresh_token=refresh_token)

    async def _store_token_payload(
        self, data: Any, path: str, previous_refresh_token: Optional[str] = None
    ) -> str:
        if not isinstance(data, dict) or not data.get("accessToken"):
            raise AuthenticationFailedError(f"CJ {path}: response carried no access token")

        now = self.tokens.now()
        access_expires = parse_vendor_datetime(data.get("accessTokenExpiryDate")) or (
            now + timedelta(days=settings.CJ_DEFAULT_ACCESS_TOKEN_DAYS)
        )
        refresh_expires = parse_vendor_datetime(data.get("refreshTokenExpiryDate")) or (
            now + timedelta(days=settings.CJ_DEFAULT_REFRESH_TOKEN_DAYS)
        )

        await self.tokens.store_tokens(
            self.supplier_id,
            data["accessToken"],
            data.get("refreshToken") or previous_refresh_token,
            access_expires,
            refresh_expires,
        )
        return data["accessToken"]

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        token = await self.get_access_token()
        try:
            payload = await self.http.request_json(
                method, path, params=params, json=json, headers={CJ_TOKEN_HEADER: token}
            )
        except RemoteError as e:
            if e.status_code == 401:
                raise AuthenticationFailedError(f"CJ rejected access token on {path}", details=e.details) from e
            raise
        return self._unwrap(payload, path)

    async def test_connection(self) -> bool:
        """True if we hold (or can obtain) a token. Rate limits propagate."""
        try:
            await self.get_access_token()
            return True
        except RateLimitedError:
            raise
        except SupplierError as e:
            logger.error(f"[CJ] Supplier {self.supplier_id}: connection test failed: {e.message}")
            return False

    # =========================================================================
    # CATALOG
    # =========================================================================

    def _parse_categories(self, data: Any) -> List[SupplierCategory]:
        if not isinstance(data, list):
            return []

        def build(node: Dict[str, Any], parent_id: Optional[str]) -> SupplierCategory:
            for id_key, name_key, children_key in (
                ("categoryFirstId", "categoryFirstName", "categoryFirstList"),
                ("categorySecondId", "categorySecondName", "categorySecondList"),
                ("categoryId", "categoryName", "children"),
            ):
                if id_key in node or name_key in node:
                    category_id = str(node.get(id_key) or "")
                    return SupplierCategory(
                        category_id=category_id,
                        name=str(node.get(name_key) or ""),
                        parent_id=parent_id,
                        children=[
                            build(child, category_id)
                            for child in node.get(children_key) or []
                            if isinstance(child, dict)
                        ],
                    )
            return SupplierCategory(category_id="", name="", parent_id=parent_id)

        return [build(node, None) for node in data if isinstance(node, dict)]

    async def get_categories(self) -> CategoryListResult:
        """
        Category tree, memoized for SUPPLIER_CATEGORY_CACHE_TTL_SECONDS.

        If CJ rate-limits a refresh and we have any previous tree, that tree
        is returned flagged stale instead of raising.
        """
        cached = self._category_cache.get(CATEGORY_CACHE_KEY)
        if cached is not None:
            logger.debug(f"[CJ] Supplier {self.supplier_id}: using cached category list")
            return CategoryListResult(categories=cached, cached=True)

        try:
            data = await self._call("GET", "v1/product/getCategory")
        except RateLimitedError:
            stale = self._category_cache.get_stale(CATEGORY_CACHE_KEY)
            if stale is None:
                raise
            logger.warning(f"[CJ] Supplier {self.supplier_id}: rate limited, serving stale categories")
            return CategoryListResult(categories=stale, cached=True, stale=True)

        categories = self._parse_categories(data)
        self._category_cache.set(CATEGORY_CACHE_KEY, categories)
        logger.info(f"[CJ] Supplier {self.supplier_id}: fetched {len(categories)} top-level categories")
        return CategoryListResult(categories=categories)

    def clear_category_cache(self) -> None:
        logger.info(f"[CJ] Supplier {self.supplier_id}: clearing category cache")
        self._category_cache.invalidate()

    def _parse_variant(self, raw: Dict[str, Any], product_id: str) -> SupplierVariant:
        return SupplierVariant(
            variant_id=str(raw.get("vid") or ""),
            product_id=product_id,
            name=text_or_none(raw.get("variantNameEn") or raw.get("variantName")),
            sku=text_or_none(raw.get("variantSku")),
            price=_decimal(raw.get("variantSellPrice")),
            image_url=text_or_none(raw.get("variantImage")),
        )

    def _parse_product(self, raw: Dict[str, Any]) -> SupplierProduct:
        product_id = normalize_product_id(raw.get("pid"))
        return SupplierProduct(
            product_id=product_id,
            name=str(raw.get("productNameEn") or raw.get("productName") or ""),
            sku=text_or_none(raw.get("productSku")),
            price=_decimal(raw.get("sellPrice")),
            image_url=text_or_none(raw.get("productImage")),
            category_id=text_or_none(raw.get("categoryId")),
            description=text_or_none(raw.get("description")),
            variants=[
                self._parse_variant(v, product_id)
                for v in raw.get("variants") or []
                if isinstance(v, dict)
            ],
        )

    async def search_products(
        self,
        page: int = 1,
        page_size: int = 20,
        name: Optional[str] = None,
        category_id: Optional[str] = None,
        sku: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
    ) -> ProductSearchResult:
        params = {
            "pageNum": page,
            "pageSize": page_size,
            "productNameEn": name,
            "categoryId": category_id,
            "productSku": sku,
            "minPrice": min_price,
            "maxPrice": max_price,
        }
        params = {k: str(v) for k, v in params.items() if v not in (None, "")}

        data = await self._call("GET", "v1/product/list", params=params)
        if not isinstance(data, dict):
            raise MalformedResponseError("CJ v1/product/list: missing data object")

        return ProductSearchResult(
            products=[self._parse_product(p) for p in data.get("list") or [] if isinstance(p, dict)],
            total=int(data.get("total") or 0),
            page=page,
            page_size=page_size,
        )

    async def get_product_details(self, product_id: str) -> SupplierProduct:
        pid = numeric_product_id(product_id)
        try:
            data = await self._call("GET", "v1/product/query", params={"pid": pid})
        except RemoteError as e:
            if _is_not_found(e):
                raise ProductNotFoundError(f"CJ product {pid} not found", product_id=product_id) from e
            raise
        if not isinstance(data, dict):
            raise ProductNotFoundError(f"CJ product {pid} not found", product_id=product_id)
        return self._parse_product(data)

    async def get_product_variants(self, product_id: str) -> List[SupplierVariant]:
        pid = numeric_product_id(product_id)
        try:
            data = await self._call("GET", "v1/product/variant/query", params={"pid": pid})
        except RemoteError as e:
            if _is_not_found(e):
                raise ProductNotFoundError(f"CJ product {pid} not found", product_id=product_id) from e
            raise
        structured = normalize_product_id(product_id)
        return [self._parse_variant(v, structured) for v in data or [] if isinstance(v, dict)]

    async def get_shipping_quotes(
        self,
        product_id: str,
        quantity: int,
        country_code: str,
        province: Optional[str] = None,
        city: Optional[str] = None,
        zip_code: Optional[str] = None,
    ) -> List[ShippingQuote]:
        body = {
            "pid": normalize_product_id(product_id),
            "quantity": quantity,
            "countryCode": country_code,
        }
        if province:
            body["province"] = province
        if city:
            body["city"] = city
        if zip_code:
            body["zipCode"] = zip_code

        data = await self._call("POST", "v1/product/shippings", json=body)
        quotes = []
        for raw in data or []:
            if not isinstance(raw, dict):
                continue
            min_days = max_days = None
            aging = str(raw.get("logisticAging") or "")
            if "-" in aging:
                low, _, high = aging.partition("-")
                if low.strip().isdigit() and high.strip().isdigit():
                    min_days, max_days = int(low), int(high)
            quotes.append(ShippingQuote(
                method=str(raw.get("logisticName") or ""),
                cost=_decimal(raw.get("logisticPrice")),
                currency="USD",
                min_days=min_days,
                max_days=max_days,
            ))
        return quotes

    async def get_shipping_methods(self, country_code: Optional[str] = None) -> List[str]:
        params = {"countryCode": country_code} if country_code else None
        data = await self._call("GET", "v1/shipping/getList", params=params)
        methods = []
        for raw in data or []:
            name = (raw.get("logisticName") or raw.get("name")) if isinstance(raw, dict) else raw
            if name:
                methods.append(str(name))
        return methods

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResponse:
        address = request.shipping_address
        body = {
            "orderNumber": request.order_number,
            "shippingAddress": {
                "name": address.name,
                "phone": address.phone or "",
                "email": address.email or request.customer_email or "",
                "address1": address.address1,
                "address2": address.address2 or "",
                "city": address.city,
                "province": address.state or "",
                "country": address.country_code,
                "zip": address.postal_code,
            },
            "productList": [
                {
                    "vid": item.variant_id or normalize_product_id(item.product_id),
                    "quantity": item.quantity,
                }
                for item in request.line_items
            ],
        }
        if request.shipping_method:
            body["logisticName"] = request.shipping_method
        if request.remark:
            body["remark"] = request.remark

        logger.info(
            f"[CJ] Supplier {self.supplier_id}: creating order {request.order_number} "
            f"({len(request.line_items)} lines)"
        )
        data = await self._call("POST", "v1/shopping/order/create", json=body)

        external_id = None
        if isinstance(data, dict):
            external_id = data.get("orderId") or data.get("id") or data.get("orderNo")
        elif isinstance(data, (str, int)):
            external_id = data
        if not external_id:
            raise MalformedResponseError(
                f"CJ order create for {request.order_number} returned no order id"
            )

        raw_status = text_or_none(data.get("orderStatus")) if isinstance(data, dict) else None
        status = self.map_status(raw_status) if raw_status else SupplierOrderStatus.PROCESSING
        return SupplierOrderResponse(
            external_order_id=str(external_id),
            raw_status=raw_status,
            status=status,
            tracking_number=text_or_none(data.get("trackingNumber")) if isinstance(data, dict) else None,
        )

    async def get_order_status(self, external_order_id: str) -> OrderStatusInfo:
        path = "v1/shopping/order/getOrder"
        try:
            data = await self._call("GET", path, params={"orderId": external_order_id})
        except RemoteError as e:
            if _is_not_found(e):
                raise ExternalOrderNotFoundError(
                    f"CJ order {external_order_id} not found", external_order_id=external_order_id
                ) from e
            raise

        if not isinstance(data, dict):
            raise ExternalOrderNotFoundError(
                f"CJ order {external_order_id} not found", external_order_id=external_order_id
            )

        logistics = data.get("logisticsInfo") if isinstance(data.get("logisticsInfo"), dict) else {}
        raw_status = str(data.get("orderStatus") or data.get("status") or "")

        return OrderStatusInfo(
            external_order_id=external_order_id,
            raw_status=raw_status,
            status=self.map_status(raw_status),
            tracking_number=text_or_none(
                data.get("trackingNumber") or data.get("trackingNo") or logistics.get("trackingNumber")
            ),
            tracking_url=text_or_none(data.get("trackingUrl") or logistics.get("trackingUrl")),
            carrier=text_or_none(data.get("logisticsName") or logistics.get("logisticsName")),
            estimated_delivery=parse_vendor_datetime(
                data.get("estimatedDeliveryTime") or data.get("estimatedDeliveryDate")
            ),
        )
