"""
Lifecycle logs for entities and links.

Each entity type has one log at logs:{entity_type}, and links share one log
at logs:links. A log is a JSON list of entries appended in order.

Invariants:
    - Appends are read-modify-write on a single key, so two racing
      writers may drop an entry; callers guard appends with the effect
      ledger to avoid duplicates on retry
    - Entries are removed only for deleted entities or by clearing a log

How to change safely:
    - Keep entry fields additive; old entries stay in the store
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .. import keys
from ..store import KvStore
from ..types import EntityType

logger = logging.getLogger(__name__)


class LogEvent(Enum):
    """Lifecycle events recorded in logs."""

    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"
    COLLECTED = "collected"


@dataclass
class LogEntry:
    """One lifecycle log entry.

    Attributes:
        event: Event name (a LogEvent value)
        entity_id: Entity or link the entry is about
        timestamp: ISO-8601 UTC timestamp
        details: Event specific fields
        id: Unique entry id
    """

    event: str
    entity_id: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        return cls(
            event=data["event"],
            entity_id=data["entity_id"],
            timestamp=data.get("timestamp", ""),
            details=dict(data.get("details") or {}),
            id=data.get("id", ""),
        )


class LifecycleLog:
    """Append-only logs stored as JSON lists."""

    def __init__(self, store: KvStore) -> None:
        self.store = store

    async def append(
        self,
        log_type: EntityType | str,
        event: LogEvent | str,
        entity_id: str,
        details: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Append one entry to a log.

        Args:
            log_type: Entity type, or "links" for the link log
            event: Lifecycle event
            entity_id: Entity or link the entry is about
            details: Extra fields

        Returns:
            The appended entry
        """
        entry = LogEntry(
            event=event.value if isinstance(event, LogEvent) else event,
            entity_id=entity_id,
            details=dict(details or {}),
        )
        key = keys.log_key(log_type)
        entries = await self.store.get(key) or []
        entries.append(entry.to_dict())
        await self.store.set(key, entries)
        return entry

    async def entries(self, log_type: EntityType | str) -> list[LogEntry]:
        raw = await self.store.get(keys.log_key(log_type)) or []
        return [LogEntry.from_dict(item) for item in raw]

    async def entries_for(self, log_type: EntityType | str, entity_id: str) -> list[LogEntry]:
        return [e for e in await self.entries(log_type) if e.entity_id == entity_id]

    async def remove_entries_for(self, log_type: EntityType | str, entity_id: str) -> int:
        """Drop every entry about one entity.

        Returns:
            Number of entries removed
        """
        key = keys.log_key(log_type)
        raw = await self.store.get(key)
        if not raw:
            return 0
        kept = [item for item in raw if item.get("entity_id") != entity_id]
        removed = len(raw) - len(kept)
        if removed:
            await self.store.set(key, kept)
        return removed

    async def clear(self, log_type: EntityType | str) -> bool:
        """Delete a whole log.

        Returns:
            True if the log existed
        """
        return await self.store.delete(keys.log_key(log_type))
