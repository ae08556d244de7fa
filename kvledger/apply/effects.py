"""
Effect ledger: durable markers that stop a side effect from running twice.

A marker is the presence of an "effects:" key. Callers build marker keys
with keys.EffectKey so the key depends only on the logical operation,
never on the moment of the attempt.

Invariants:
    - A marker is written only after its guarded action succeeded
      (mark-after-do): a crash in between causes a duplicate attempt,
      never a lost effect
    - Markers are cleared only by explicit entity deletion or rollback
    - Store failures propagate unchanged

How to change safely:
    - Never mark before running the action
    - Guarded actions must tolerate a repeat (upsert rather than append),
      or accept a duplicate log entry as the recoverable failure mode
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from .. import keys
from ..store import KvStore
from ..types import EntityType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EffectLedger:
    """Store-backed effect markers.

    Example:
        >>> ledger = EffectLedger(store)
        >>> key = EffectKey.created("task", "task-1")
        >>> ran = await ledger.run_once(key, lambda: append_log(...))
    """

    def __init__(self, store: KvStore) -> None:
        self.store = store

    async def has_effect(self, key: str) -> bool:
        return await self.store.get(key) is not None

    async def mark_effect(self, key: str) -> None:
        await self.store.set(key, {"marked_at": datetime.now(timezone.utc).isoformat()})

    async def clear_effect(self, key: str) -> None:
        await self.store.delete(key)

    async def clear_effects_by_prefix(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        effect_prefix: str = "",
    ) -> int:
        """Clear every marker of one entity whose effect name starts with effect_prefix.

        Args:
            entity_type: Entity type owning the markers
            entity_id: Entity id owning the markers
            effect_prefix: Effect name prefix; empty clears all markers of the entity

        Returns:
            Number of markers deleted
        """
        prefix = keys.effect_prefix(entity_type, entity_id) + effect_prefix
        cleared = 0
        for key in await self.store.scan_prefix(prefix):
            if await self.store.delete(key):
                cleared += 1
        if cleared:
            logger.debug(
                "Effect markers cleared",
                extra={"prefix": prefix, "count": cleared},
            )
        return cleared

    async def run_once(self, key: str, action: Callable[[], Awaitable[T]]) -> bool:
        """Run action unless its marker exists, then mark it.

        Args:
            key: Effect marker key
            action: Coroutine factory performing the side effect

        Returns:
            True if the action ran, False if the marker was already present

        Raises:
            Whatever action raises; no marker is written in that case
        """
        if await self.has_effect(key):
            logger.debug("Effect already applied, skipping", extra={"effect_key": key})
            return False
        await action()
        await self.mark_effect(key)
        return True
