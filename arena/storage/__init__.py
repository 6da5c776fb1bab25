"""Storage backends exposing atomic units of work."""
from arena.config import config

from .base import Storage, UnitOfWork
from .memory import MemoryStorage
from .postgres import PostgresStorage


def create_storage(backend: str = None) -> Storage:
    """Build the storage backend named by ``backend`` or the config."""
    backend = (backend or config.storage_backend).lower()
    if backend == "memory":
        return MemoryStorage()
    if backend == "postgres":
        return PostgresStorage()
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = ["Storage", "UnitOfWork", "MemoryStorage", "PostgresStorage", "create_storage"]
