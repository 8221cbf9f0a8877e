import json
from datetime import timedelta

import httpx
import pytest

from dropship_engine.core.exceptions import ConfigurationError, ExternalOrderNotFoundError
from dropship_engine.models import Supplier, SupplierOrderStatus, SupplierStatus, SupplierType
from dropship_engine.services.suppliers import (
    AliExpressAdapter,
    CJDropshippingAdapter,
    GenericRestAdapter,
    InMemoryTokenStore,
    SpocketAdapter,
    SupplierAdapterFactory,
    SupplierAdapterPool,
    TokenRepository,
)
from dropship_engine.services.suppliers.base import (
    OrderLineItem,
    ShippingAddress,
    SupplierConfig,
    SupplierOrderRequest,
)


def supplier_row(**overrides) -> Supplier:
    fields = dict(
        id=3,
        name="Acme Wholesale",
        supplier_type=SupplierType.GENERIC,
        status=SupplierStatus.ACTIVE,
        api_key="key-1",
        api_endpoint="https://acme.test/api/",
    )
    fields.update(overrides)
    return Supplier(**fields)


def test_every_supplier_type_has_an_adapter():
    assert set(SupplierAdapterFactory.get_registered_types()) == set(SupplierType)


@pytest.mark.parametrize("supplier_type, adapter_cls", [
    (SupplierType.CJ_DROPSHIPPING, CJDropshippingAdapter),
    (SupplierType.ALIEXPRESS, AliExpressAdapter),
    (SupplierType.SPOCKET, SpocketAdapter),
    (SupplierType.GENERIC, GenericRestAdapter),
])
def test_factory_builds_registered_class(supplier_type, adapter_cls):
    config = SupplierConfig.from_model(supplier_row(supplier_type=supplier_type))
    adapter = SupplierAdapterFactory.create(config, TokenRepository(InMemoryTokenStore()))
    assert type(adapter) is adapter_cls
    assert adapter.supplier_type == supplier_type


def test_generic_adapter_requires_endpoint():
    config = SupplierConfig.from_model(supplier_row(api_endpoint=None))
    with pytest.raises(ConfigurationError):
        SupplierAdapterFactory.create(config, TokenRepository(InMemoryTokenStore()))


@pytest.mark.parametrize("endpoint, expected", [
    ("https://developers.cjdropshipping.com/api2.0/", SupplierType.CJ_DROPSHIPPING),
    ("https://api.aliexpress.com/", SupplierType.ALIEXPRESS),
    ("https://api.spocket.co/", SupplierType.SPOCKET),
    ("https://wholesale.example.com/", SupplierType.GENERIC),
    (None, SupplierType.GENERIC),
])
def test_legacy_rows_resolve_type_from_endpoint(endpoint, expected):
    assert supplier_row(supplier_type=None, api_endpoint=endpoint).resolved_type == expected


def test_inactive_or_keyless_supplier_is_not_ready():
    tokens = TokenRepository(InMemoryTokenStore())
    inactive = SupplierAdapterFactory.create(
        SupplierConfig.from_model(supplier_row(status=SupplierStatus.INACTIVE)), tokens
    )
    keyless = SupplierAdapterFactory.create(SupplierConfig.from_model(supplier_row(api_key=None)), tokens)

    with pytest.raises(ConfigurationError):
        inactive.ensure_ready()
    with pytest.raises(ConfigurationError):
        keyless.ensure_ready()


@pytest.mark.asyncio
async def test_pool_reuses_adapter_per_supplier():
    pool = SupplierAdapterPool(TokenRepository(InMemoryTokenStore()))

    first = await pool.get(supplier_row())
    again = await pool.get(supplier_row(name="Acme Renamed"))

    assert first is again
    assert again.config.name == "Acme Renamed"
    await pool.close()


@pytest.mark.asyncio
async def test_pool_rebuilds_adapter_when_credentials_change(dt_clock):
    tokens = TokenRepository(InMemoryTokenStore(), clock=dt_clock)
    pool = SupplierAdapterPool(tokens)
    first = await pool.get(supplier_row())
    await tokens.store_tokens(3, "old-token", None, dt_clock() + timedelta(days=1), None)

    rotated = await pool.get(supplier_row(api_key="key-2"))

    assert rotated is not first
    assert rotated.config.api_key == "key-2"
    assert await tokens.get_access_token(3) is None
    await pool.close()


def sample_request():
    return SupplierOrderRequest(
        order_number="ORD-1-S3-0123456789abcdef",
        shipping_address=ShippingAddress(
            name="Jordan Reyes", address1="12 Harbor Way", city="Portland", postal_code="97201",
        ),
        line_items=[OrderLineItem(product_id="SKU-1", quantity=2, variant_id="V-1")],
    )


@pytest.mark.asyncio
async def test_generic_adapter_order_round_trip():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers["Authorization"]
            return httpx.Response(201, json={"id": "EXT-1", "status": "accepted"})
        if request.url.path.endswith("orders/EXT-1"):
            return httpx.Response(200, json={
                "id": "EXT-1",
                "fulfillment_status": "fulfilled",
                "tracking_info": {"tracking_number": "1Z999", "carrier": "UPS"},
            })
        return httpx.Response(404, json={"error": "not found"})

    config = SupplierConfig.from_model(supplier_row())
    adapter = GenericRestAdapter(
        config, TokenRepository(InMemoryTokenStore()),
        transport=httpx.MockTransport(handler), min_request_interval=0,
    )

    created = await adapter.create_order(sample_request())
    status = await adapter.get_order_status("EXT-1")

    assert captured["auth"] == "Bearer key-1"
    assert captured["body"]["order_id"] == "ORD-1-S3-0123456789abcdef"
    assert captured["body"]["items"][0]["quantity"] == 2
    assert created.external_order_id == "EXT-1"
    assert created.status == SupplierOrderStatus.PROCESSING
    assert status.status == SupplierOrderStatus.SHIPPED
    assert status.tracking_number == "1Z999"
    assert status.carrier == "UPS"

    with pytest.raises(ExternalOrderNotFoundError):
        await adapter.get_order_status("EXT-404")
    await adapter.close()


@pytest.mark.asyncio
async def test_spocket_payload_splits_recipient_name():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"order_id": "SP-5", "status": "awaiting_fulfillment"})

    config = SupplierConfig.from_model(supplier_row(supplier_type=SupplierType.SPOCKET))
    adapter = SpocketAdapter(
        config, TokenRepository(InMemoryTokenStore()),
        transport=httpx.MockTransport(handler), min_request_interval=0,
    )

    created = await adapter.create_order(sample_request())

    shipping = captured["body"]["shipping_details"]
    assert (shipping["first_name"], shipping["last_name"]) == ("Jordan", "Reyes")
    assert captured["body"]["order_reference"] == "ORD-1-S3-0123456789abcdef"
    assert created.external_order_id == "SP-5"
    assert created.status == SupplierOrderStatus.PROCESSING
    await adapter.close()


@pytest.mark.asyncio
async def test_aliexpress_status_vocabulary():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "code": "0",
            "result": {
                "order_status": "WAIT_BUYER_ACCEPT_GOODS",
                "logistics_info": {"tracking_number": "LP00123", "logistics_company": "Cainiao"},
            },
        })

    config = SupplierConfig.from_model(supplier_row(supplier_type=SupplierType.ALIEXPRESS))
    adapter = AliExpressAdapter(
        config, TokenRepository(InMemoryTokenStore()),
        transport=httpx.MockTransport(handler), min_request_interval=0,
    )

    info = await adapter.get_order_status("8100")

    assert info.status == SupplierOrderStatus.SHIPPED
    assert info.tracking_number == "LP00123"
    await adapter.close()
