"""
Base protocol for the key-value store adapter.

This module defines the KvStore protocol that every backend implements.
The store holds two kinds of keys: JSON values and unordered string sets.

Invariants:
    - Every call is atomic for its single key only
    - No multi-key transaction or read isolation is offered
    - A set that loses its last member no longer exists
    - Backend failures surface as StoreUnavailableError

How to change safely:
    - Protocol changes require updating all implementations
    - Never add a multi-key atomic primitive; callers must not rely on one
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Iterable, Protocol, runtime_checkable

from ..errors import StoreError, StoreUnavailableError

if TYPE_CHECKING:
    from ..config import LedgerConfig

logger = logging.getLogger(__name__)

__all__ = ["KvStore", "StoreError", "StoreUnavailableError", "create_store", "mget_batched"]


@runtime_checkable
class KvStore(Protocol):
    """Protocol for key-value store backends.

    Values are JSON-compatible Python objects. Each backend serializes
    values on write, so a read never aliases an object held by a caller.

    Example:
        >>> store = InMemoryKvStore()
        >>> await store.connect()
        >>> await store.set("data:task:task-1", {"id": "task-1"})
        >>> await store.sadd("index:task", "task-1")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Read a value key, None when absent."""
        ...

    @abstractmethod
    async def mget(self, keys: Iterable[str]) -> list[Any | None]:
        """Read several value keys, in order, None for each absent key."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Write a value key."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value or set key.

        Returns:
            True if the key existed
        """
        ...

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        """Add members to a set.

        Returns:
            Number of members that were not already present
        """
        ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        """Remove members from a set.

        Returns:
            Number of members that were present
        """
        ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        """Read all members of a set, empty when absent."""
        ...

    @abstractmethod
    async def scan_prefix(self, prefix: str) -> list[str]:
        """List every value and set key starting with prefix, sorted."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the backend is open."""
        ...


def create_store(config: LedgerConfig) -> KvStore:
    """Factory function to create a store from configuration.

    Args:
        config: Ledger configuration

    Returns:
        Appropriate KvStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryKvStore
    from .sqlite import SqliteKvStore

    if config.store_backend == StoreBackend.MEMORY:
        return InMemoryKvStore()
    elif config.store_backend == StoreBackend.SQLITE:
        return SqliteKvStore(
            data_dir=config.storage.data_dir,
            db_name=config.storage.db_name,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            cache_size_pages=config.storage.cache_size_pages,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.store_backend}")


async def mget_batched(store: KvStore, keys: list[str], batch_size: int = 200) -> list[Any | None]:
    """mget in fixed-size batches, preserving key order."""
    values: list[Any | None] = []
    for start in range(0, len(keys), batch_size):
        values.extend(await store.mget(keys[start : start + batch_size]))
    return values
