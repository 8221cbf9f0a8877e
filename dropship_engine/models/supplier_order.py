"""
SupplierOrder model

One fulfillment request against one supplier for a subset of one customer
order's items.

State machine:
    PENDING -> PROCESSING -> SHIPPED -> COMPLETED
    PENDING/PROCESSING/SHIPPED -> CANCELLED | ERROR
COMPLETED and CANCELLED are terminal. A PENDING order may carry an
error_message (failed dispatch) and stays eligible for re-dispatch.

Never deleted; only transitioned or annotated. `notes` is an append-only
audit log.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Numeric, Enum, Index
from sqlalchemy.orm import relationship

from dropship_engine.core.database import Base


class SupplierOrderStatus(str, PyEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"  # vendor said something we don't recognize; never stored as a transition


# Allowed forward transitions
VALID_TRANSITIONS = {
    SupplierOrderStatus.PENDING: {
        SupplierOrderStatus.PROCESSING,
        SupplierOrderStatus.SHIPPED,
        SupplierOrderStatus.COMPLETED,
        SupplierOrderStatus.CANCELLED,
        SupplierOrderStatus.ERROR,
    },
    SupplierOrderStatus.PROCESSING: {
        SupplierOrderStatus.SHIPPED,
        SupplierOrderStatus.COMPLETED,
        SupplierOrderStatus.CANCELLED,
        SupplierOrderStatus.ERROR,
    },
    SupplierOrderStatus.SHIPPED: {
        SupplierOrderStatus.COMPLETED,
        SupplierOrderStatus.CANCELLED,
        SupplierOrderStatus.ERROR,
    },
    SupplierOrderStatus.ERROR: {
        SupplierOrderStatus.PROCESSING,
        SupplierOrderStatus.SHIPPED,
        SupplierOrderStatus.COMPLETED,
        SupplierOrderStatus.CANCELLED,
    },
    SupplierOrderStatus.COMPLETED: set(),
    SupplierOrderStatus.CANCELLED: set(),
    SupplierOrderStatus.UNKNOWN: set(),
}

SHIPPED_STATUSES = frozenset({SupplierOrderStatus.SHIPPED, SupplierOrderStatus.COMPLETED})
# Statuses the reconciler polls; ERROR is included so a vendor-side recovery is picked up
RECONCILE_STATUSES = (
    SupplierOrderStatus.PROCESSING,
    SupplierOrderStatus.SHIPPED,
    SupplierOrderStatus.ERROR,
)


def can_transition(current: SupplierOrderStatus, new: SupplierOrderStatus) -> bool:
    return new in VALID_TRANSITIONS.get(current, set())


class SupplierOrder(Base):
    __tablename__ = "supplier_orders"

    id = Column(Integer, primary_key=True, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)

    status = Column(
        Enum(SupplierOrderStatus, name="supplier_order_status"),
        nullable=False,
        default=SupplierOrderStatus.PENDING,
        index=True,
    )
    order_date = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Pricing - Numeric(12,2)
    total_cost = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    # Vendor side
    idempotency_key = Column(String(100), unique=True, nullable=True)
    external_order_id = Column(String(100), nullable=True, index=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(Text, nullable=True)
    carrier = Column(String(100), nullable=True)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)

    # Audit
    error_message = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                        onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    supplier = relationship("Supplier", back_populates="supplier_orders")
    order = relationship("Order", back_populates="supplier_orders")
    items = relationship("OrderItem", back_populates="supplier_order")

    __table_args__ = (
        Index("ix_supplier_orders_supplier_status", "supplier_id", "status"),
    )

    def append_note(self, message: str, at: Optional[datetime] = None, skip_repeat: bool = False) -> bool:
        """
        Append a timestamped line to the audit log.

        With skip_repeat, nothing is written when the last line already
        carries the same message. Returns whether a line was added.
        """
        if skip_repeat and self.last_note_message == message:
            return False
        stamp = (at or datetime.now(timezone.utc)).isoformat()
        line = f"[{stamp}] {message}"
        self.notes = f"{self.notes}\n{line}" if self.notes else line
        return True

    @property
    def last_note_message(self) -> Optional[str]:
        """Message of the newest audit line, without its timestamp."""
        if not self.notes:
            return None
        last = self.notes.rsplit("\n", 1)[-1]
        if last.startswith("[") and "] " in last:
            return last.split("] ", 1)[1]
        return last

    def __repr__(self) -> str:
        return f"<SupplierOrder {self.id} supplier={self.supplier_id} {self.status}>"
