"""Project/bid persistence."""

from typing import Optional

from ..config import Settings, get_settings
from .base import ProjectStore, UniqueViolation
from .memory import MemoryStore


def create_store(settings: Optional[Settings] = None) -> ProjectStore:
    """Build the store named by ``settings.store_backend``."""
    settings = settings or get_settings()
    if settings.store_backend == "memory":
        return MemoryStore()
    if settings.store_backend == "mongo":
        from .mongo import MongoStore
        return MongoStore(settings=settings)
    raise ValueError(f"Unknown store backend: {settings.store_backend}")


__all__ = ["ProjectStore", "UniqueViolation", "MemoryStore", "create_store"]
