"""
Supplier Adapter Registry, Factory and Pool v1.0.0

- register_adapter maps a SupplierType to an adapter class
- SupplierAdapterFactory builds an adapter from a Supplier row; the type is
  resolved once here, never per call
- SupplierAdapterPool keeps ONE adapter per supplier id so dispatch and
  reconciliation share that supplier's rate gate and token lock

Components:
- TokenRepository: token cache + 5-minute full-login gate
- CJDropshippingAdapter: reference implementation
- AliExpressAdapter, SpocketAdapter, GenericRestAdapter
"""
import logging
from typing import Dict, List, Optional, Type

import httpx

from dropship_engine.core.exceptions import ConfigurationError
from dropship_engine.models.supplier import Supplier, SupplierType
from dropship_engine.services.suppliers.base import BaseSupplierAdapter, SupplierConfig
from dropship_engine.services.suppliers.token_repository import (
    DatabaseTokenStore,
    InMemoryTokenStore,
    TokenData,
    TokenRepository,
    TokenStore,
)

logger = logging.getLogger(__name__)

# Registry of adapter implementations
_ADAPTER_REGISTRY: Dict[SupplierType, Type[BaseSupplierAdapter]] = {}


def register_adapter(supplier_type: SupplierType):
    """
    Decorator to register a supplier adapter implementation.

    Usage:
        @register_adapter(SupplierType.CJ_DROPSHIPPING)
        class CJDropshippingAdapter(BaseSupplierAdapter):
            ...
    """
    def decorator(cls: Type[BaseSupplierAdapter]):
        _ADAPTER_REGISTRY[supplier_type] = cls
        logger.debug(f"Registered supplier adapter: {supplier_type.value} -> {cls.__name__}")
        return cls
    return decorator


class SupplierAdapterFactory:
    """Creates adapter instances from SupplierConfig."""

    @classmethod
    def create(
        cls,
        config: SupplierConfig,
        tokens: TokenRepository,
        **options,
    ) -> BaseSupplierAdapter:
        """
        Build an adapter for a supplier.

        Raises:
            ConfigurationError: no adapter is registered for the type
        """
        adapter_cls = _ADAPTER_REGISTRY.get(config.supplier_type)
        if adapter_cls is None:
            raise ConfigurationError(
                f"No adapter registered for supplier type {config.supplier_type.value}",
                supplier_id=config.supplier_id,
            )
        return adapter_cls(config, tokens, **options)

    @classmethod
    def get_registered_types(cls) -> List[SupplierType]:
        """Get list of all registered supplier types."""
        return list(_ADAPTER_REGISTRY.keys())


class SupplierAdapterPool:
    """
    One adapter per supplier for the life of the process.

    Options (transport, min_request_interval, ...) are passed through to
    every adapter the pool builds.
    """

    def __init__(self, tokens: Optional[TokenRepository] = None, **adapter_options):
        self.tokens = tokens or TokenRepository(DatabaseTokenStore())
        self._options = adapter_options
        self._adapters: Dict[int, BaseSupplierAdapter] = {}

    async def get(self, supplier: Supplier) -> BaseSupplierAdapter:
        """Return the cached adapter, rebuilding it if the credentials changed."""
        config = SupplierConfig.from_model(supplier)
        adapter = self._adapters.get(config.supplier_id)
        if adapter is not None:
            if adapter.config.fingerprint == config.fingerprint:
                if adapter.config != config:
                    adapter.config = config  # name/status only
                return adapter
            logger.info(f"Supplier {config.supplier_id} credentials changed, rebuilding adapter")
            await adapter.close()
            await self.tokens.clear(config.supplier_id)

        adapter = SupplierAdapterFactory.create(config, self.tokens, **self._options)
        self._adapters[config.supplier_id] = adapter
        return adapter

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()


# Import adapters to trigger registration
# These imports must be at the bottom to avoid circular imports
from dropship_engine.services.suppliers.cj_dropshipping import CJDropshippingAdapter  # noqa: E402, F401
from dropship_engine.services.suppliers.aliexpress import AliExpressAdapter  # noqa: E402, F401
from dropship_engine.services.suppliers.generic import GenericRestAdapter  # noqa: E402, F401
from dropship_engine.services.suppliers.spocket import SpocketAdapter  # noqa: E402, F401

__all__ = [
    "register_adapter",
    "SupplierAdapterFactory",
    "SupplierAdapterPool",
    "BaseSupplierAdapter",
    "SupplierConfig",
    "TokenRepository",
    "TokenStore",
    "TokenData",
    "DatabaseTokenStore",
    "InMemoryTokenStore",
    "CJDropshippingAdapter",
    "AliExpressAdapter",
    "GenericRestAdapter",
    "SpocketAdapter",
]
