"""
Supplier model

An external dropshipping partner: credentials, token state and the flat
shipping cost charged per supplier order.

Token columns are owned by the token repository (DatabaseTokenStore);
everything else is admin configuration.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Column, Integer, String, DateTime, Text, Numeric, Enum
from sqlalchemy.orm import relationship

from dropship_engine.core.database import Base


class SupplierStatus(str, PyEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class SupplierType(str, PyEnum):
    """Adapter tag. Resolved once when an adapter is built, never per call."""
    CJ_DROPSHIPPING = "CJ_DROPSHIPPING"
    ALIEXPRESS = "ALIEXPRESS"
    SPOCKET = "SPOCKET"
    GENERIC = "GENERIC"

    @classmethod
    def from_endpoint(cls, endpoint: Optional[str]) -> "SupplierType":
        """Infer the tag for legacy rows that only carry an API endpoint."""
        host = (endpoint or "").lower()
        if "cjdropshipping" in host:
            return cls.CJ_DROPSHIPPING
        if "aliexpress" in host:
            return cls.ALIEXPRESS
        if "spocket" in host:
            return cls.SPOCKET
        return cls.GENERIC


class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    supplier_type = Column(Enum(SupplierType, name="supplier_type"), nullable=True)
    status = Column(
        Enum(SupplierStatus, name="supplier_status"),
        nullable=False,
        default=SupplierStatus.ACTIVE,
        index=True,
    )

    # Credentials
    api_key = Column(Text, nullable=True)
    api_endpoint = Column(String(500), nullable=True)
    account_email = Column(String(255), nullable=True)  # CJ logs in with email + API key

    # Token state (TokenRepository)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_auth_attempt = Column(DateTime(timezone=True), nullable=True)

    # Pricing - flat shipping added to every supplier order
    average_shipping = Column(Numeric(12, 2), default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                        onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    supplier_orders = relationship("SupplierOrder", back_populates="supplier")

    @property
    def is_active(self) -> bool:
        return self.status == SupplierStatus.ACTIVE

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_endpoint)

    @property
    def resolved_type(self) -> SupplierType:
        return self.supplier_type or SupplierType.from_endpoint(self.api_endpoint)

    def __repr__(self) -> str:
        return f"<Supplier {self.id} {self.name!r} {self.status}>"
