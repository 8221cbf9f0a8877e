from dropship_engine.core.config import settings
from dropship_engine.core.database import Base, AsyncSessionLocal

__all__ = ["settings", "Base", "AsyncSessionLocal"]
