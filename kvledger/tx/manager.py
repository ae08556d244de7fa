"""
Transaction manager: approximate rollback for multi-entity workflows.

The store only offers single-key atomic operations, so a workflow that
touches many keys gets rollback by snapshotting every key under the
configured prefixes before it runs, and restoring them if it raises.

State machine:
    IDLE -> CAPTURING -> EXECUTING -> COMMITTED -> IDLE
                                   -> ROLLING_BACK -> ROLLED_BACK -> IDLE

Invariants:
    - At most one workflow is active per manager instance; execute()
      while active raises ConcurrentTransactionError, it does not queue
    - On success the snapshot is discarded and nothing is written from it
    - On failure the original error is re-raised after rollback; if
      rollback itself fails, RollbackFailure is raised with the failed keys
      and the original error attached
    - Snapshots distinguish absent keys from keys holding empty values
    - The snapshot is best-effort, not point-in-time: writes by other
      workflows during the run are not isolated and may be undone

How to change safely:
    - Keep capture prefixes covering every area a workflow writes
    - Never swallow a rollback error
    - State lives on the instance; do not introduce a module-level singleton
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from .. import keys
from ..config import TransactionConfig
from ..errors import ConcurrentTransactionError, RollbackFailure
from ..store import KvStore, mget_batched
from ..types import EntityType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TxPhase(Enum):
    """Transaction manager states."""

    IDLE = "idle"
    CAPTURING = "capturing"
    EXECUTING = "executing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


def _serialize(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


@dataclass(frozen=True)
class SnapshotEntry:
    """Captured state of one key.

    Attributes:
        kind: "absent", "value" or "set"
        value: Serialized JSON text for value keys
        members: Sorted members for set keys
    """

    kind: str
    value: str | None = None
    members: tuple[str, ...] = ()

    @classmethod
    def absent(cls) -> SnapshotEntry:
        return cls(kind="absent")

    @property
    def is_absent(self) -> bool:
        return self.kind == "absent"


@dataclass
class Snapshot:
    """Store state captured before a workflow runs.

    Keys not present in original_state were absent at capture time.

    Attributes:
        original_state: Captured entry per key
        cleared_entities: Entity ids the workflow reported clearing, per type
        cleared_logs: Log types the workflow reported clearing
        cleared_links: Link ids the workflow reported clearing
        created_entities: Entity ids the workflow reported creating, per type
        captured_prefixes: Key prefixes scanned at capture and rollback
        captured_at: ISO-8601 UTC capture time
        consumed: True once rollback() has used the snapshot
    """

    original_state: dict[str, SnapshotEntry] = field(default_factory=dict)
    cleared_entities: dict[str, list[str]] = field(default_factory=dict)
    cleared_logs: list[str] = field(default_factory=list)
    cleared_links: list[str] = field(default_factory=list)
    created_entities: dict[str, list[str]] = field(default_factory=dict)
    captured_prefixes: tuple[str, ...] = ()
    captured_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    consumed: bool = False

    def entry(self, key: str) -> SnapshotEntry:
        return self.original_state.get(key, SnapshotEntry.absent())

    def summary(self) -> dict[str, Any]:
        return {
            "keys_captured": len(self.original_state),
            "cleared_entities": {t: len(ids) for t, ids in self.cleared_entities.items()},
            "cleared_logs": list(self.cleared_logs),
            "cleared_links": len(self.cleared_links),
            "created_entities": {t: len(ids) for t, ids in self.created_entities.items()},
            "captured_at": self.captured_at,
        }


class TransactionManager:
    """Runs workflows with snapshot-based rollback.

    Each instance owns its own state, so independent managers can coexist
    (in tests, or one per shard).

    Example:
        >>> tx = TransactionManager(store)
        >>> async def workflow():
        ...     await repo.upsert(EntityType.PLAYER, {"id": "player-1"})
        ...     raise RuntimeError("step 3 failed")
        >>> await tx.execute(workflow)   # raises RuntimeError, player-1 is gone
    """

    def __init__(self, store: KvStore, config: TransactionConfig | None = None) -> None:
        self.store = store
        self.config = config or TransactionConfig()
        self._phase = TxPhase.IDLE
        self._snapshot: Snapshot | None = None
        self.last_outcome: TxPhase | None = None

    @property
    def phase(self) -> TxPhase:
        return self._phase

    def is_active(self) -> bool:
        return self._phase != TxPhase.IDLE

    def get_state(self) -> Snapshot | None:
        """The snapshot of the running workflow, None when idle."""
        return self._snapshot

    async def capture_state(self) -> Snapshot:
        """Read every key under the capture prefixes.

        Not a point-in-time view: keys are read one batch at a time.
        """
        prefixes = tuple(self.config.capture_prefixes)
        all_keys: set[str] = set()
        for prefix in prefixes:
            all_keys.update(await self.store.scan_prefix(prefix))

        snapshot = Snapshot(captured_prefixes=prefixes)
        value_keys = sorted(k for k in all_keys if not keys.is_set_key(k))
        set_keys = sorted(k for k in all_keys if keys.is_set_key(k))

        values = await mget_batched(self.store, value_keys, self.config.capture_batch_size)
        for key, value in zip(value_keys, values):
            # The scan found the key, so a None value is a stored null
            snapshot.original_state[key] = SnapshotEntry(kind="value", value=_serialize(value))
        for key in set_keys:
            members = await self.store.smembers(key)
            if members:
                snapshot.original_state[key] = SnapshotEntry(kind="set", members=tuple(sorted(members)))

        logger.debug("Transaction state captured", extra={"keys_captured": len(snapshot.original_state)})
        return snapshot

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run fn with rollback on failure.

        Args:
            fn: Coroutine factory performing the workflow

        Returns:
            Whatever fn returns

        Raises:
            ConcurrentTransactionError: If a workflow is already active
            RollbackFailure: If fn raised and rollback failed too
            Exception: The original error of fn after a successful rollback
        """
        if self.is_active():
            raise ConcurrentTransactionError(
                f"A transaction is already active (phase={self._phase.value})"
            )

        self._phase = TxPhase.CAPTURING
        try:
            snapshot = await self.capture_state()
            self._snapshot = snapshot
            self._phase = TxPhase.EXECUTING

            try:
                result = await fn()
            except Exception as error:
                self._phase = TxPhase.ROLLING_BACK
                logger.warning(
                    "Workflow failed, rolling back",
                    extra={"error": repr(error), **snapshot.summary()},
                )
                try:
                    await self.rollback(snapshot)
                except RollbackFailure as failure:
                    self.last_outcome = TxPhase.ROLLING_BACK
                    logger.error(
                        "Rollback failed, manual intervention required",
                        extra={"failed_keys": failure.failed_keys[:50], "error": repr(error)},
                    )
                    raise RollbackFailure(failure.failed_keys, error, failure.errors) from error
                self._phase = TxPhase.ROLLED_BACK
                self.last_outcome = TxPhase.ROLLED_BACK
                logger.info("Workflow rolled back", extra={"error": repr(error)})
                raise

            self._phase = TxPhase.COMMITTED
            self.last_outcome = TxPhase.COMMITTED
            return result
        finally:
            self._snapshot = None
            self._phase = TxPhase.IDLE

    async def rollback(self, snapshot: Snapshot) -> None:
        """Restore every captured key and delete keys created since capture.

        Every key is attempted even after failures; all failures are
        reported together.

        Raises:
            RollbackFailure: If any key could not be restored
            ValueError: If the snapshot was already consumed
        """
        if snapshot.consumed:
            raise ValueError("Snapshot was already used for a rollback")
        snapshot.consumed = True

        failed: list[str] = []
        errors: dict[str, BaseException] = {}

        current_keys: set[str] = set()
        for prefix in snapshot.captured_prefixes:
            try:
                current_keys.update(await self.store.scan_prefix(prefix))
            except Exception as e:
                failed.append(f"{prefix}*")
                errors[f"{prefix}*"] = e
        for entity_type, ids in snapshot.created_entities.items():
            current_keys.update(keys.data_key(entity_type, i) for i in ids)

        created = sorted(k for k in current_keys if k not in snapshot.original_state)
        for key in created:
            try:
                await self.store.delete(key)
            except Exception as e:
                failed.append(key)
                errors[key] = e

        restored = 0
        for key in sorted(snapshot.original_state):
            entry = snapshot.original_state[key]
            try:
                if await self._restore(key, entry):
                    restored += 1
            except Exception as e:
                failed.append(key)
                errors[key] = e

        logger.info(
            "Rollback finished",
            extra={"keys_deleted": len(created), "keys_restored": restored, "keys_failed": len(failed)},
        )
        if failed:
            raise RollbackFailure(failed, errors=errors)

    async def _restore(self, key: str, entry: SnapshotEntry) -> bool:
        """Write one captured entry back. Returns False when already equal."""
        if entry.kind == "set":
            current = await self.store.smembers(key)
            if current == set(entry.members):
                return False
            await self.store.delete(key)
            await self.store.sadd(key, *entry.members)
            return True

        current = await self.store.get(key)
        # A read of None cannot tell a stored null from a deleted key
        if current is not None and _serialize(current) == entry.value:
            return False
        await self.store.set(key, json.loads(entry.value or "null"))
        return True

    # -------------------------------------------------------------------------
    # Workflow bookkeeping
    # -------------------------------------------------------------------------

    def _require_snapshot(self, what: str) -> Snapshot | None:
        if self._snapshot is None:
            logger.warning(f"No active transaction, {what} not tracked")
        return self._snapshot

    def track_entity_clearing(self, entity_type: EntityType | str, entity_ids: Iterable[str]) -> None:
        snapshot = self._require_snapshot("entity clearing")
        if snapshot is not None:
            bucket = snapshot.cleared_entities.setdefault(EntityType.parse(entity_type).value, [])
            bucket.extend(entity_ids)

    def track_log_clearing(self, log_type: str) -> None:
        snapshot = self._require_snapshot("log clearing")
        if snapshot is not None and log_type not in snapshot.cleared_logs:
            snapshot.cleared_logs.append(log_type)

    def track_link_clearing(self, link_ids: Iterable[str]) -> None:
        snapshot = self._require_snapshot("link clearing")
        if snapshot is not None:
            snapshot.cleared_links.extend(link_ids)

    def track_entity_creation(self, entity_type: EntityType | str, entity_id: str) -> None:
        snapshot = self._require_snapshot("entity creation")
        if snapshot is not None:
            snapshot.created_entities.setdefault(EntityType.parse(entity_type).value, []).append(
                entity_id
            )
