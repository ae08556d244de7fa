"""
Transaction module for kvledger - snapshot-based workflow rollback.

Invariants:
    - One active workflow per TransactionManager instance
    - Rollback failures are always surfaced, never swallowed

How to change safely:
    - Test rollback against injected store failures
"""

from .manager import Snapshot, SnapshotEntry, TransactionManager, TxPhase

__all__ = ["Snapshot", "SnapshotEntry", "TransactionManager", "TxPhase"]
