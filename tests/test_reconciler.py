from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from dropship_engine.core.exceptions import RateLimitedError, SupplierTimeoutError
from dropship_engine.models import (
    FulfillmentStatus,
    Order,
    OrderItem,
    SupplierOrder,
    SupplierOrderStatus,
)
from dropship_engine.services.dropship import OrderFanoutEngine, StatusReconciler, compute_fulfillment_status
from dropship_engine.services.suppliers.base import OrderStatusInfo


class ScriptedAdapter:
    """Answers get_order_status from a dict of external id -> info or exception."""

    def __init__(self):
        self.replies = {}
        self.polled = []

    def reply(self, external_order_id, status, raw=None, **tracking):
        self.replies[external_order_id] = OrderStatusInfo(
            external_order_id=external_order_id,
            raw_status=raw or status.value,
            status=status,
            **tracking,
        )

    def fail(self, external_order_id, error):
        self.replies[external_order_id] = error

    def ensure_ready(self):
        pass

    async def get_order_status(self, external_order_id):
        self.polled.append(external_order_id)
        reply = self.replies[external_order_id]
        if isinstance(reply, Exception):
            raise reply
        return reply


class ScriptedPool:
    def __init__(self):
        self.adapters = {}

    def for_supplier(self, supplier_id) -> ScriptedAdapter:
        return self.adapters.setdefault(supplier_id, ScriptedAdapter())

    async def get(self, supplier):
        return self.for_supplier(supplier.id)


@pytest.fixture
def pool():
    return ScriptedPool()


@pytest.fixture
def reconciler(pool, session_factory):
    return StatusReconciler(pool, session_factory, batch_size=50)


async def mark_dispatched(session_factory, supplier_order_id, external_order_id, status=SupplierOrderStatus.PROCESSING):
    async with session_factory() as db:
        supplier_order = await db.get(SupplierOrder, supplier_order_id)
        supplier_order.external_order_id = external_order_id
        supplier_order.status = status
        items = (await db.execute(
            select(OrderItem).where(OrderItem.supplier_order_id == supplier_order_id)
        )).scalars().all()
        for item in items:
            item.supplier_order_status = status
        await db.commit()


@pytest.fixture
def two_supplier_order(session_factory, make_supplier, make_order):
    """One customer order split across two suppliers, both dispatched."""

    async def _build():
        first = await make_supplier(name="First")
        second = await make_supplier(name="Second")
        order, _ = await make_order([
            {"supplier_id": first.id, "price": "10.00"},
            {"supplier_id": second.id, "price": "20.00"},
        ])
        fanout = await OrderFanoutEngine(session_factory).fan_out(order.id)
        ids = {r.supplier_id: r.supplier_order_id for r in fanout.supplier_results}
        await mark_dispatched(session_factory, ids[first.id], "A-1")
        await mark_dispatched(session_factory, ids[second.id], "B-1")
        return order, first, second, ids

    return _build


async def load(session_factory, model, pk):
    async with session_factory() as db:
        return await db.get(model, pk)


@pytest.mark.asyncio
async def test_partial_then_full_fulfillment(reconciler, pool, session_factory, two_supplier_order):
    order, first, second, ids = await two_supplier_order()
    pool.for_supplier(first.id).reply(
        "A-1", SupplierOrderStatus.SHIPPED, raw="SHIPPED", tracking_number="YT1", carrier="YunExpress"
    )
    pool.for_supplier(second.id).reply("B-1", SupplierOrderStatus.PROCESSING)

    sweep = await reconciler.reconcile()

    assert sweep.success
    assert sweep.suppliers_checked == 2
    assert sweep.total_orders == 2
    assert sweep.updated_orders == 1
    shipped = await load(session_factory, SupplierOrder, ids[first.id])
    assert shipped.status == SupplierOrderStatus.SHIPPED
    assert shipped.tracking_number == "YT1"
    assert shipped.last_checked_at is not None
    assert "PROCESSING -> SHIPPED" in shipped.notes
    assert (await load(session_factory, Order, order.id)).fulfillment_status == FulfillmentStatus.PARTIALLY_FULFILLED

    async with session_factory() as db:
        item = (await db.execute(
            select(OrderItem).where(OrderItem.supplier_order_id == ids[first.id])
        )).scalar_one()
        assert item.supplier_order_status == SupplierOrderStatus.SHIPPED
        assert item.supplier_tracking_number == "YT1"

    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.SHIPPED, tracking_number="YT1")
    pool.for_supplier(second.id).reply("B-1", SupplierOrderStatus.COMPLETED, raw="DELIVERED")

    await reconciler.reconcile()

    assert (await load(session_factory, SupplierOrder, ids[second.id])).status == SupplierOrderStatus.COMPLETED
    assert (await load(session_factory, Order, order.id)).fulfillment_status == FulfillmentStatus.FULFILLED


@pytest.mark.asyncio
async def test_completed_orders_are_no_longer_polled(reconciler, pool, session_factory, two_supplier_order):
    order, first, second, ids = await two_supplier_order()
    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.COMPLETED)
    pool.for_supplier(second.id).reply("B-1", SupplierOrderStatus.PROCESSING)

    await reconciler.reconcile()
    await reconciler.reconcile()

    assert pool.for_supplier(first.id).polled == ["A-1"]
    assert pool.for_supplier(second.id).polled == ["B-1", "B-1"]


@pytest.mark.asyncio
async def test_unknown_status_leaves_order_alone(reconciler, pool, session_factory, two_supplier_order):
    order, first, second, ids = await two_supplier_order()
    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.UNKNOWN, raw="ON_THE_MOON")
    pool.for_supplier(second.id).reply("B-1", SupplierOrderStatus.PROCESSING)

    sweep = await reconciler.reconcile()

    assert sweep.updated_orders == 0
    stored = await load(session_factory, SupplierOrder, ids[first.id])
    assert stored.status == SupplierOrderStatus.PROCESSING
    assert "Unrecognized supplier status 'ON_THE_MOON'" in stored.notes
    assert (await load(session_factory, Order, order.id)).fulfillment_status == FulfillmentStatus.UNFULFILLED


@pytest.mark.asyncio
async def test_regression_is_ignored(reconciler, pool, session_factory, two_supplier_order):
    order, first, second, ids = await two_supplier_order()
    await mark_dispatched(session_factory, ids[first.id], "A-1", status=SupplierOrderStatus.SHIPPED)
    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.PROCESSING)
    pool.for_supplier(second.id).reply("B-1", SupplierOrderStatus.PROCESSING)

    await reconciler.reconcile()

    stored = await load(session_factory, SupplierOrder, ids[first.id])
    assert stored.status == SupplierOrderStatus.SHIPPED
    assert "not a valid transition from SHIPPED" in stored.notes


@pytest.mark.asyncio
async def test_one_failing_order_does_not_stop_the_sweep(
    reconciler, pool, session_factory, make_supplier, make_order
):
    supplier = await make_supplier()
    order, _ = await make_order([
        {"supplier_id": supplier.id, "price": "10.00"},
    ], order_number="ORD-1")
    other, _ = await make_order([
        {"supplier_id": supplier.id, "price": "10.00"},
    ], order_number="ORD-2")
    engine = OrderFanoutEngine(session_factory)
    first_id = (await engine.fan_out(order.id)).created_supplier_order_ids[0]
    second_id = (await engine.fan_out(other.id)).created_supplier_order_ids[0]
    await mark_dispatched(session_factory, first_id, "X-1")
    await mark_dispatched(session_factory, second_id, "X-2")

    adapter = pool.for_supplier(supplier.id)
    adapter.fail("X-1", SupplierTimeoutError("timed out"))
    adapter.reply("X-2", SupplierOrderStatus.SHIPPED)

    sweep = await reconciler.reconcile()

    assert not sweep.success
    assert adapter.polled == ["X-1", "X-2"]
    failed = await load(session_factory, SupplierOrder, first_id)
    assert failed.status == SupplierOrderStatus.PROCESSING
    assert "Status check failed (SUPPLIER_TIMEOUT)" in failed.notes
    assert (await load(session_factory, SupplierOrder, second_id)).status == SupplierOrderStatus.SHIPPED


@pytest.mark.asyncio
async def test_rate_limit_stops_that_suppliers_sweep(
    reconciler, pool, session_factory, make_supplier, make_order
):
    supplier = await make_supplier()
    engine = OrderFanoutEngine(session_factory)
    supplier_order_ids = []
    for n in range(3):
        order, _ = await make_order([{"supplier_id": supplier.id, "price": "5.00"}], order_number=f"ORD-{n}")
        supplier_order_ids.append((await engine.fan_out(order.id)).created_supplier_order_ids[0])
    for n, supplier_order_id in enumerate(supplier_order_ids):
        await mark_dispatched(session_factory, supplier_order_id, f"R-{n}")

    adapter = pool.for_supplier(supplier.id)
    adapter.fail("R-0", RateLimitedError("slow down", wait_seconds=60))
    adapter.reply("R-1", SupplierOrderStatus.SHIPPED)
    adapter.reply("R-2", SupplierOrderStatus.SHIPPED)

    sweep = await reconciler.reconcile()

    assert adapter.polled == ["R-0"]
    assert sweep.rate_limited_supplier_ids == [supplier.id]
    assert sweep.results[0].retry_after_seconds == 60


@pytest.mark.asyncio
async def test_vendor_error_status_is_recorded(reconciler, pool, session_factory, two_supplier_order):
    order, first, second, ids = await two_supplier_order()
    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.ERROR, raw="FAILED")
    pool.for_supplier(second.id).reply("B-1", SupplierOrderStatus.PROCESSING)

    await reconciler.reconcile()

    stored = await load(session_factory, SupplierOrder, ids[first.id])
    assert stored.status == SupplierOrderStatus.ERROR
    assert stored.error_message == "Supplier reported status FAILED"


class FlakyCommitReconciler(StatusReconciler):
    """Fails to save the first status update it applies."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures_left = 1

    async def apply_status(self, db, supplier_order, info):
        if self.failures_left:
            self.failures_left -= 1
            raise OperationalError("UPDATE supplier_orders", None, Exception("database is locked"))
        return await super().apply_status(db, supplier_order, info)


@pytest.mark.asyncio
async def test_database_error_on_one_order_does_not_stop_the_sweep(
    pool, session_factory, make_supplier, make_order
):
    supplier = await make_supplier()
    engine = OrderFanoutEngine(session_factory)
    supplier_order_ids = []
    for n in range(2):
        order, _ = await make_order([{"supplier_id": supplier.id, "price": "5.00"}], order_number=f"ORD-D{n}")
        supplier_order_ids.append((await engine.fan_out(order.id)).created_supplier_order_ids[0])
    for n, supplier_order_id in enumerate(supplier_order_ids):
        await mark_dispatched(session_factory, supplier_order_id, f"D-{n}")

    adapter = pool.for_supplier(supplier.id)
    adapter.reply("D-0", SupplierOrderStatus.SHIPPED)
    adapter.reply("D-1", SupplierOrderStatus.SHIPPED)

    sweep = await FlakyCommitReconciler(pool, session_factory, batch_size=50).reconcile()

    assert adapter.polled == ["D-0", "D-1"]
    assert not sweep.success
    assert sweep.total_orders == 2
    by_id = {r.supplier_order_id: r for r in sweep.results}
    assert by_id[supplier_order_ids[0]].error_code == "DATABASE_ERROR"
    assert by_id[supplier_order_ids[1]].success
    assert (await load(session_factory, SupplierOrder, supplier_order_ids[0])).status == SupplierOrderStatus.PROCESSING
    assert (await load(session_factory, SupplierOrder, supplier_order_ids[1])).status == SupplierOrderStatus.SHIPPED


@pytest.mark.asyncio
async def test_order_in_error_recovers_when_supplier_ships(reconciler, pool, session_factory, two_supplier_order):
    order, first, second, ids = await two_supplier_order()
    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.ERROR, raw="FAILED")
    pool.for_supplier(second.id).reply("B-1", SupplierOrderStatus.PROCESSING)
    await reconciler.reconcile()

    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.SHIPPED, tracking_number="YT9")
    await reconciler.reconcile()

    assert pool.for_supplier(first.id).polled == ["A-1", "A-1"]
    stored = await load(session_factory, SupplierOrder, ids[first.id])
    assert stored.status == SupplierOrderStatus.SHIPPED
    assert stored.error_message is None
    assert stored.tracking_number == "YT9"
    assert (await load(session_factory, Order, order.id)).fulfillment_status == FulfillmentStatus.PARTIALLY_FULFILLED


@pytest.mark.asyncio
async def test_repeated_sweeps_do_not_repeat_notes(reconciler, pool, session_factory, two_supplier_order):
    order, first, second, ids = await two_supplier_order()
    pool.for_supplier(first.id).reply("A-1", SupplierOrderStatus.UNKNOWN, raw="ON_THE_MOON")
    pool.for_supplier(second.id).fail("B-1", SupplierTimeoutError("timed out"))

    for _ in range(3):
        await reconciler.reconcile()

    unknown = await load(session_factory, SupplierOrder, ids[first.id])
    failing = await load(session_factory, SupplierOrder, ids[second.id])
    assert unknown.notes.count("Unrecognized supplier status") == 1
    assert failing.notes.count("Status check failed") == 1
    assert len(pool.for_supplier(second.id).polled) == 3


def test_fulfillment_status_rules():
    def item(status, supplier_order_id=1):
        return SimpleNamespace(supplier_order_id=supplier_order_id, supplier_order_status=status)

    shipped, done, open_ = SupplierOrderStatus.SHIPPED, SupplierOrderStatus.COMPLETED, SupplierOrderStatus.PROCESSING

    assert compute_fulfillment_status([item(shipped), item(done)]) == FulfillmentStatus.FULFILLED
    assert compute_fulfillment_status([item(shipped), item(open_)]) == FulfillmentStatus.PARTIALLY_FULFILLED
    assert compute_fulfillment_status([item(open_), item(open_)]) is None
    assert compute_fulfillment_status([item(shipped), item(None, supplier_order_id=None)]) == (
        FulfillmentStatus.PARTIALLY_FULFILLED
    )
    assert compute_fulfillment_status([]) is None
