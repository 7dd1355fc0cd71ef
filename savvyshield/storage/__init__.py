# Storage Module
from .base import EnforcementQuery, EventQuery, ShieldStore
from .memory import InMemoryShieldStore
from .postgres import PostgresShieldStore
from ..config import Settings


def create_store(config: Settings) -> ShieldStore:
    """Build the store selected by STORAGE_BACKEND."""
    if config.storage_backend == "memory":
        return InMemoryShieldStore()
    return PostgresShieldStore(config.postgres_url)


__all__ = [
    "EnforcementQuery",
    "EventQuery",
    "ShieldStore",
    "InMemoryShieldStore",
    "PostgresShieldStore",
    "create_store",
]
