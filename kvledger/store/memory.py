"""
In-memory key-value store implementation for testing.

This module provides a simple in-memory store backend for:
- Unit tests
- Integration tests
- Local development without a database file

Invariants:
    - All data is lost on close() or process exit
    - Values are stored as JSON text, so reads return fresh objects
    - Every operation is atomic for its single key, like production backends

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with KvStore protocol
    - Add features to help with testing scenarios (failure injection)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from .base import StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class _InjectedFailure:
    """A pending failure armed by fail_on()."""

    op: str
    key_prefix: str
    remaining: int | None


class InMemoryKvStore:
    """In-memory implementation of KvStore for testing.

    Thread safety:
        Uses an asyncio lock per operation. Safe to use from
        multiple coroutines.

    Failure injection:
        fail_on("set", "data:character:") makes the next matching set()
        raise StoreUnavailableError. Use times=None to fail until
        clear_failures() is called.

    Example:
        >>> store = InMemoryKvStore()
        >>> await store.connect()
        >>> await store.set("data:task:task-1", {"id": "task-1"})
        >>> await store.get("data:task:task-1")
        {'id': 'task-1'}
    """

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._sets: dict[str, set[str]] = {}
        self._failures: list[_InjectedFailure] = []
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryKvStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._values.clear()
        self._sets.clear()
        self._failures.clear()
        logger.debug("InMemoryKvStore closed")

    def _check(self, op: str, keys: Iterable[str]) -> None:
        if not self._connected:
            raise StoreUnavailableError("Not connected")
        keys = list(keys)
        for failure in self._failures:
            if failure.op != op:
                continue
            if not any(k.startswith(failure.key_prefix) for k in keys):
                continue
            if failure.remaining is not None:
                failure.remaining -= 1
                if failure.remaining <= 0:
                    self._failures.remove(failure)
            raise StoreUnavailableError(f"Injected failure: {op} {keys[0] if keys else ''}")

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            self._check("get", [key])
            raw = self._values.get(key)
            return None if raw is None else json.loads(raw)

    async def mget(self, keys: Iterable[str]) -> list[Any | None]:
        keys = list(keys)
        async with self._lock:
            self._check("mget", keys)
            result = []
            for key in keys:
                raw = self._values.get(key)
                result.append(None if raw is None else json.loads(raw))
            return result

    async def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, sort_keys=True)
        async with self._lock:
            self._check("set", [key])
            self._values[key] = raw

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._check("delete", [key])
            existed = key in self._values or key in self._sets
            self._values.pop(key, None)
            self._sets.pop(key, None)
            return existed

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        async with self._lock:
            self._check("sadd", [key])
            current = self._sets.setdefault(key, set())
            before = len(current)
            current.update(members)
            return len(current) - before

    async def srem(self, key: str, *members: str) -> int:
        async with self._lock:
            self._check("srem", [key])
            current = self._sets.get(key)
            if not current:
                return 0
            removed = len(current & set(members))
            current.difference_update(members)
            if not current:
                del self._sets[key]
            return removed

    async def smembers(self, key: str) -> set[str]:
        async with self._lock:
            self._check("smembers", [key])
            return set(self._sets.get(key, ()))

    async def scan_prefix(self, prefix: str) -> list[str]:
        async with self._lock:
            self._check("scan_prefix", [prefix])
            keys = {k for k in self._values if k.startswith(prefix)}
            keys.update(k for k in self._sets if k.startswith(prefix))
            return sorted(keys)

    # -------------------------------------------------------------------------
    # Testing helpers
    # -------------------------------------------------------------------------

    def fail_on(self, op: str, key_prefix: str = "", times: int | None = 1) -> None:
        """Arm an injected StoreUnavailableError.

        Args:
            op: Operation name (get, mget, set, delete, sadd, srem, smembers, scan_prefix)
            key_prefix: Only keys starting with this prefix trigger the failure
            times: Number of failures before disarming, None for unlimited
        """
        self._failures.append(_InjectedFailure(op=op, key_prefix=key_prefix, remaining=times))

    def clear_failures(self) -> None:
        """Disarm every injected failure."""
        self._failures.clear()

    def dump(self) -> dict[str, Any]:
        """Raw view of the store: JSON text for values, sorted lists for sets."""
        state: dict[str, Any] = dict(self._values)
        for key, members in self._sets.items():
            state[key] = sorted(members)
        return state

    def clear(self) -> None:
        """Drop all data but stay connected."""
        self._values.clear()
        self._sets.clear()
