"""
Pytest configuration and fixtures for dropship engine tests.
"""
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SUPPLIER_MIN_REQUEST_INTERVAL_SECONDS"] = "0"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from dropship_engine.core.database import Base  # noqa: E402
from dropship_engine.models import (  # noqa: E402
    Address,
    Order,
    OrderItem,
    Product,
    Supplier,
    SupplierStatus,
    SupplierType,
)


class FakeClock:
    """Monotonic float clock whose sleep() just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeDateTimeClock:
    """Datetime clock for token expiry and auth-gate tests."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dt_clock() -> FakeDateTimeClock:
    return FakeDateTimeClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dropship.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def make_supplier(session_factory):
    """Insert a Supplier row and return it."""

    async def _make(
        name: str = "Supplier",
        supplier_type: SupplierType = SupplierType.GENERIC,
        status: SupplierStatus = SupplierStatus.ACTIVE,
        api_key="key-123",
        api_endpoint="https://supplier.test/api/",
        average_shipping=Decimal("0"),
        **fields,
    ) -> Supplier:
        async with session_factory() as db:
            supplier = Supplier(
                name=name,
                supplier_type=supplier_type,
                status=status,
                api_key=api_key,
                api_endpoint=api_endpoint,
                average_shipping=average_shipping,
                **fields,
            )
            db.add(supplier)
            await db.commit()
            return supplier

    return _make


@pytest.fixture
def make_order(session_factory):
    """
    Insert an Order with a shipping address and one item per line.

    lines: list of dicts with keys supplier_id, price, quantity and
    optionally cost_price, supplier_product_id, total.
    Returns (order, [items]).
    """

    async def _make(lines, order_number: str = "ORD-1001"):
        async with session_factory() as db:
            address = Address(
                recipient_name="Jordan Reyes",
                phone="555-0100",
                address_line1="12 Harbor Way",
                city="Portland",
                state_province="OR",
                postal_code="97201",
                country_code="US",
            )
            db.add(address)
            await db.flush()

            order = Order(
                order_number=order_number,
                customer_name="Jordan Reyes",
                customer_email="jordan@example.com",
                total=Decimal("0"),
                shipping_address_id=address.id,
            )
            db.add(order)
            await db.flush()

            items = []
            order_total = Decimal("0")
            for n, line in enumerate(lines):
                price = Decimal(str(line["price"]))
                quantity = line.get("quantity", 1)
                product = Product(
                    name=f"Product {n}",
                    sku=f"SKU-{n}",
                    price=price,
                    cost_price=line.get("cost_price"),
                    supplier_id=line.get("supplier_id"),
                    supplier_product_id=line.get("supplier_product_id", f"{1000 + n}"),
                )
                db.add(product)
                await db.flush()

                total = Decimal(str(line.get("total", price * quantity)))
                item = OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    product_name=product.name,
                    quantity=quantity,
                    price=price,
                    total=total,
                )
                db.add(item)
                items.append(item)
                order_total += total

            order.total = order_total
            await db.commit()
            return order, items

    return _make
