"""
Order models

Customer-side records consumed by fan-out and dispatch. The storefront owns
these tables; this package only writes:
- Order.fulfillment_status
- OrderItem.supplier_order_id / supplier_order_status /
  supplier_tracking_number / supplier_tracking_url / profit_amount
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Numeric, Enum
from sqlalchemy.orm import relationship

from dropship_engine.core.database import Base
from dropship_engine.models.supplier_order import SupplierOrderStatus


class FulfillmentStatus(str, PyEnum):
    UNFULFILLED = "UNFULFILLED"
    PARTIALLY_FULFILLED = "PARTIALLY_FULFILLED"
    FULFILLED = "FULFILLED"


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, index=True)
    recipient_name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=False)
    state_province = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=False)
    country_code = Column(String(2), nullable=False, default="US")

    orders = relationship("Order", back_populates="shipping_address")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    cost_price = Column(Numeric(12, 2), nullable=True)

    # Dropshipping
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True, index=True)
    supplier_product_id = Column(String(100), nullable=True)

    supplier = relationship("Supplier")
    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    sku = Column(String(100), nullable=True)
    supplier_variant_id = Column(String(100), nullable=True)  # CJ "vid"

    product = relationship("Product", back_populates="variants")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, index=True, nullable=False)
    status = Column(String(50), default="paid", index=True)

    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    # Pricing - Numeric(12,2)
    total = Column(Numeric(12, 2), nullable=False, default=0)

    shipping_address_id = Column(Integer, ForeignKey("addresses.id"), nullable=True)

    fulfillment_status = Column(
        Enum(FulfillmentStatus, name="fulfillment_status"),
        nullable=False,
        default=FulfillmentStatus.UNFULFILLED,
        index=True,
    )

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                        onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    items = relationship("OrderItem", back_populates="order")
    shipping_address = relationship("Address", back_populates="orders")
    supplier_orders = relationship("SupplierOrder", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id", ondelete="SET NULL"), nullable=True)

    product_name = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(12, 2), nullable=False)  # unit sale price
    total = Column(Numeric(12, 2), nullable=False)  # price * quantity after discounts

    # Dropshipping
    supplier_order_id = Column(
        Integer, ForeignKey("supplier_orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    supplier_order_status = Column(Enum(SupplierOrderStatus, name="supplier_order_status"), nullable=True)
    supplier_tracking_number = Column(String(100), nullable=True)
    supplier_tracking_url = Column(Text, nullable=True)
    profit_amount = Column(Numeric(12, 2), nullable=True)

    # Relationships
    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    variant = relationship("ProductVariant")
    supplier_order = relationship("SupplierOrder", back_populates="items")
