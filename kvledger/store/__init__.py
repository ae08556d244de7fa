"""
Store module for kvledger - key-value store adapters.

This module provides:
- KvStore protocol (single-key atomic values and sets)
- In-memory backend for tests and local development
- SQLite backend for single-node deployments

Invariants:
    - No backend offers multi-key atomicity
    - Backend failures surface as StoreUnavailableError

How to change safely:
    - Protocol changes require updating all backends
    - Run the store contract tests against every backend
"""

from .base import KvStore, StoreError, StoreUnavailableError, create_store, mget_batched
from .memory import InMemoryKvStore
from .sqlite import SqliteKvStore

__all__ = [
    "KvStore",
    "StoreError",
    "StoreUnavailableError",
    "create_store",
    "mget_batched",
    "InMemoryKvStore",
    "SqliteKvStore",
]
