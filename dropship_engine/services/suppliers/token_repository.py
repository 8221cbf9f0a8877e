"""
Supplier Token Repository

Keeps access/refresh tokens per supplier and enforces the full-login gate.

Rules:
- An access token is only handed out while it has more than
  SUPPLIER_TOKEN_REFRESH_MARGIN_SECONDS (10 min) of validity left.
- A refresh token is handed out until it expires.
- A full authentication is allowed at most once per
  SUPPLIER_AUTH_MIN_INTERVAL_SECONDS (5 min) per supplier. The first attempt
  ever is always allowed.

The in-memory cache is hydrated from the durable store once per supplier per
process. The auth gate re-reads last_auth_attempt from the store every time
it is checked, so several workers sharing one database share one gate.
"""
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from dropship_engine.core.config import settings
from dropship_engine.core.database import AsyncSessionLocal
from dropship_engine.core.exceptions import RecordNotFoundError
from dropship_engine.core.utils import utcnow, ensure_aware
from dropship_engine.models.supplier import Supplier

logger = logging.getLogger(__name__)


@dataclass
class TokenData:
    """In-memory mirror of a supplier's persisted token columns."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires: Optional[datetime] = None
    refresh_token_expires: Optional[datetime] = None
    last_auth_attempt: Optional[datetime] = None


class TokenStore(ABC):
    """Durable backend for TokenRepository."""

    @abstractmethod
    async def load(self, supplier_id: int) -> Optional[TokenData]:
        ...

    @abstractmethod
    async def save(self, supplier_id: int, data: TokenData) -> None:
        ...

    @abstractmethod
    async def load_auth_attempt(self, supplier_id: int) -> Optional[datetime]:
        ...

    @abstractmethod
    async def save_auth_attempt(self, supplier_id: int, at: datetime) -> None:
        ...

    @abstractmethod
    async def clear(self, supplier_id: int) -> None:
        ...


class InMemoryTokenStore(TokenStore):
    """Process-local store. Single worker deployments and tests."""

    def __init__(self):
        self._data: Dict[int, TokenData] = {}

    async def load(self, supplier_id: int) -> Optional[TokenData]:
        data = self._data.get(supplier_id)
        return replace(data) if data else None

    async def save(self, supplier_id: int, data: TokenData) -> None:
        self._data[supplier_id] = replace(data)

    async def load_auth_attempt(self, supplier_id: int) -> Optional[datetime]:
        data = self._data.get(supplier_id)
        return data.last_auth_attempt if data else None

    async def save_auth_attempt(self, supplier_id: int, at: datetime) -> None:
        data = self._data.setdefault(supplier_id, TokenData())
        data.last_auth_attempt = at

    async def clear(self, supplier_id: int) -> None:
        data = self._data.get(supplier_id)
        if data:
            self._data[supplier_id] = TokenData(last_auth_attempt=data.last_auth_attempt)


class DatabaseTokenStore(TokenStore):
    """
    Token columns on the Supplier row.

    Each call opens and commits its own short session so token writes are
    never rolled back by an unrelated failure in the caller's unit of work.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def _get_supplier(self, db, supplier_id: int) -> Supplier:
        supplier = await db.get(Supplier, supplier_id)
        if supplier is None:
            raise RecordNotFoundError(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})
        return supplier

    async def load(self, supplier_id: int) -> Optional[TokenData]:
        async with self._session_factory() as db:
            supplier = await db.get(Supplier, supplier_id)
            if supplier is None:
                return None
            return TokenData(
                access_token=supplier.access_token,
                refresh_token=supplier.refresh_token,
                access_token_expires=ensure_aware(supplier.token_expires_at),
                refresh_token_expires=ensure_aware(supplier.refresh_token_expires_at),
                last_auth_attempt=ensure_aware(supplier.last_auth_attempt),
            )

    async def save(self, supplier_id: int, data: TokenData) -> None:
        async with self._session_factory() as db:
            supplier = await self._get_supplier(db, supplier_id)
            supplier.access_token = data.access_token
            supplier.refresh_token = data.refresh_token
            supplier.token_expires_at = data.access_token_expires
            supplier.refresh_token_expires_at = data.refresh_token_expires
            supplier.last_auth_attempt = data.last_auth_attempt
            await db.commit()

    async def load_auth_attempt(self, supplier_id: int) -> Optional[datetime]:
        async with self._session_factory() as db:
            supplier = await db.get(Supplier, supplier_id)
            return ensure_aware(supplier.last_auth_attempt) if supplier else None

    async def save_auth_attempt(self, supplier_id: int, at: datetime) -> None:
        async with self._session_factory() as db:
            supplier = await self._get_supplier(db, supplier_id)
            supplier.last_auth_attempt = at
            await db.commit()

    async def clear(self, supplier_id: int) -> None:
        async with self._session_factory() as db:
            supplier = await db.get(Supplier, supplier_id)
            if supplier is None:
                return
            supplier.access_token = None
            supplier.refresh_token = None
            supplier.token_expires_at = None
            supplier.refresh_token_expires_at = None
            await db.commit()


class TokenRepository:
    """
    Token cache + auth gate, shared by every adapter in the process.

    Usage:
        tokens = TokenRepository(DatabaseTokenStore())
        token = await tokens.get_access_token(supplier.id)
    """

    def __init__(
        self,
        store: Optional[TokenStore] = None,
        clock: Callable[[], datetime] = utcnow,
        refresh_margin_seconds: Optional[int] = None,
        auth_min_interval_seconds: Optional[int] = None,
    ):
        self.store = store or DatabaseTokenStore()
        self._clock = clock
        self.refresh_margin = timedelta(
            seconds=refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.SUPPLIER_TOKEN_REFRESH_MARGIN_SECONDS
        )
        self.auth_min_interval = timedelta(
            seconds=auth_min_interval_seconds
            if auth_min_interval_seconds is not None
            else settings.SUPPLIER_AUTH_MIN_INTERVAL_SECONDS
        )
        self._cache: Dict[int, TokenData] = {}

    def now(self) -> datetime:
        return self._clock()

    async def _load(self, supplier_id: int) -> TokenData:
        """Hydrate from the store on first use for this supplier."""
        data = self._cache.get(supplier_id)
        if data is None:
            data = await self.store.load(supplier_id) or TokenData()
            self._cache[supplier_id] = data
            logger.debug(f"[TOKENS] Hydrated supplier {supplier_id} from store")
        return data

    async def get_access_token(self, supplier_id: int) -> Optional[str]:
        data = await self._load(supplier_id)
        if not data.access_token or not data.access_token_expires:
            return None
        if data.access_token_expires - self._clock() <= self.refresh_margin:
            logger.info(f"[TOKENS] Supplier {supplier_id}: access token expiring, refresh needed")
            return None
        return data.access_token

    async def get_refresh_token(self, supplier_id: int) -> Optional[str]:
        data = await self._load(supplier_id)
        if not data.refresh_token or not data.refresh_token_expires:
            return None
        if data.refresh_token_expires <= self._clock():
            logger.info(f"[TOKENS] Supplier {supplier_id}: refresh token expired")
            return None
        return data.refresh_token

    async def store_tokens(
        self,
        supplier_id: int,
        access_token: str,
        refresh_token: Optional[str],
        access_expires_at: datetime,
        refresh_expires_at: Optional[datetime],
    ) -> None:
        data = await self._load(supplier_id)
        data.access_token = access_token
        if refresh_token:
            data.refresh_token = refresh_token
            data.refresh_token_expires = refresh_expires_at
        data.access_token_expires = access_expires_at
        data.last_auth_attempt = self._clock()
        await self.store.save(supplier_id, data)
        logger.info(
            f"[TOKENS] Supplier {supplier_id}: stored tokens, "
            f"access valid until {access_expires_at.isoformat()}"
        )

    async def record_auth_attempt(self, supplier_id: int) -> None:
        """Stamp a full-login attempt before it is sent, whatever its outcome."""
        now = self._clock()
        data = await self._load(supplier_id)
        data.last_auth_attempt = now
        await self.store.save_auth_attempt(supplier_id, now)

    async def _last_auth_attempt(self, supplier_id: int) -> Optional[datetime]:
        data = await self._load(supplier_id)
        persisted = await self.store.load_auth_attempt(supplier_id)
        candidates = [t for t in (data.last_auth_attempt, persisted) if t is not None]
        if not candidates:
            return None
        latest = max(candidates)
        data.last_auth_attempt = latest
        return latest

    async def time_until_next_auth(self, supplier_id: int) -> int:
        """Seconds (rounded up) until a full login is allowed. 0 means now."""
        last = await self._last_auth_attempt(supplier_id)
        if last is None:
            return 0
        remaining = (last + self.auth_min_interval - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    async def can_authenticate(self, supplier_id: int) -> bool:
        return await self.time_until_next_auth(supplier_id) == 0

    async def get_token_data(self, supplier_id: int) -> TokenData:
        return replace(await self._load(supplier_id))

    async def clear(self, supplier_id: int) -> None:
        """Forget tokens (credential rotation). The auth gate is kept."""
        data = await self._load(supplier_id)
        last_attempt = data.last_auth_attempt
        self._cache[supplier_id] = TokenData(last_auth_attempt=last_attempt)
        await self.store.clear(supplier_id)
        logger.info(f"[TOKENS] Supplier {supplier_id}: tokens cleared")
