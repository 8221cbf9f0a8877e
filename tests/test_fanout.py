import re
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from dropship_engine.models import (
    FulfillmentStatus,
    Order,
    OrderItem,
    SupplierOrder,
    SupplierOrderStatus,
    SupplierStatus,
)
from dropship_engine.services.dropship import OrderFanoutEngine


@pytest.fixture
def engine(session_factory):
    return OrderFanoutEngine(session_factory, cost_ratio=Decimal("0.7"), currency="USD")


@pytest.mark.asyncio
async def test_order_split_across_suppliers(engine, session_factory, make_supplier, make_order):
    """
    Two active suppliers get a SupplierOrder each; an inactive supplier's
    item and an in-house item stay unassigned.
    """
    cj = await make_supplier(name="CJ", average_shipping=Decimal("5.00"))
    keyless = await make_supplier(name="Keyless", api_key=None)
    paused = await make_supplier(name="Paused", status=SupplierStatus.INACTIVE)

    order, items = await make_order([
        {"supplier_id": cj.id, "price": "25.00", "quantity": 2, "cost_price": Decimal("10.00")},
        {"supplier_id": keyless.id, "price": "20.00", "quantity": 1},
        {"supplier_id": paused.id, "price": "9.00", "quantity": 1},
        {"supplier_id": None, "price": "15.00", "quantity": 1},
    ])
    cj_item, keyless_item, paused_item, house_item = items

    result = await engine.fan_out(order.id)

    assert result.success
    assert len(result.created_supplier_order_ids) == 2
    assert result.unassigned_item_ids == [paused_item.id]

    by_supplier = {r.supplier_id: r for r in result.supplier_results}
    assert by_supplier[paused.id].skipped
    assert by_supplier[cj.id].total_cost == Decimal("25.00")  # 10 x 2 + 5 shipping
    assert by_supplier[cj.id].supplier_has_credentials
    assert by_supplier[keyless.id].total_cost == Decimal("14.00")  # 0.7 x 20
    assert not by_supplier[keyless.id].supplier_has_credentials

    async with session_factory() as db:
        cj_order = await db.get(SupplierOrder, by_supplier[cj.id].supplier_order_id)
        assert cj_order.status == SupplierOrderStatus.PENDING
        assert cj_order.shipping_cost == Decimal("5.00")
        assert cj_order.order_id == order.id
        assert re.match(r"^ORD-1001-S\d+-[0-9a-f]{16}$", cj_order.idempotency_key)
        assert "Auto-generated from customer order #ORD-1001" in cj_order.notes

        refreshed = {i.id: i for i in (await db.execute(select(OrderItem))).scalars()}
        assert refreshed[cj_item.id].supplier_order_id == cj_order.id
        assert refreshed[cj_item.id].supplier_order_status == SupplierOrderStatus.PENDING
        assert refreshed[cj_item.id].profit_amount == Decimal("30.00")  # 50 - 20
        assert refreshed[keyless_item.id].profit_amount == Decimal("6.00")  # 20 - 14
        assert refreshed[paused_item.id].supplier_order_id is None
        assert refreshed[house_item.id].supplier_order_id is None

        stored = await db.get(Order, order.id)
        assert stored.fulfillment_status == FulfillmentStatus.UNFULFILLED


@pytest.mark.asyncio
async def test_fan_out_twice_creates_nothing_new(engine, session_factory, make_supplier, make_order):
    supplier = await make_supplier()
    order, _ = await make_order([{"supplier_id": supplier.id, "price": "12.00"}])

    first = await engine.fan_out(order.id)
    second = await engine.fan_out(order.id)

    assert len(first.created_supplier_order_ids) == 1
    assert second.success
    assert second.created_supplier_order_ids == []

    async with session_factory() as db:
        count = await db.scalar(select(func.count()).select_from(SupplierOrder))
    assert count == 1


@pytest.mark.asyncio
async def test_zero_cost_price_is_respected(engine, make_supplier, make_order):
    supplier = await make_supplier()
    order, _ = await make_order([
        {"supplier_id": supplier.id, "price": "8.00", "quantity": 3, "cost_price": Decimal("0")},
    ])

    result = await engine.fan_out(order.id)

    assert result.supplier_results[0].total_cost == Decimal("0.00")


@pytest.mark.asyncio
async def test_missing_order(engine):
    result = await engine.fan_out(424242)

    assert not result.success
    assert result.error_code == "DROPSHIP_RECORD_NOT_FOUND"


def test_idempotency_key_ignores_item_order():
    class Item:
        def __init__(self, id, quantity):
            self.id = id
            self.quantity = quantity

    a = OrderFanoutEngine.generate_idempotency_key("ORD-9", 4, [Item(1, 2), Item(5, 1)])
    b = OrderFanoutEngine.generate_idempotency_key("ORD-9", 4, [Item(5, 1), Item(1, 2)])
    c = OrderFanoutEngine.generate_idempotency_key("ORD-9", 4, [Item(5, 2), Item(1, 2)])

    assert a == b
    assert a != c
    assert a.startswith("ORD-9-S4-")
