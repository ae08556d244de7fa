"""
Entity upsert path and the single entity deletion capability.

Every entity write goes through EntityRepository.upsert():
1. Persist the record at data:{type}:{id}
2. Add the id to the all-ids set index:{type}
3. Move index bucket membership (SecondaryIndexMaintainer)
4. Ensure links implied by reference fields (LinkRules)
5. Append effect-guarded lifecycle log entries

Invariants:
    - Index and link maintenance run after the record is persisted and
      before upsert() returns; skipping them makes indexes drift
    - delete() is the only place links cascade and effect markers of an
      entity are cleared
    - delete() removes the record last, so a retried delete still sees
      the entity and can clean its derived state

How to change safely:
    - New derived state must be maintained in both upsert() and delete()
    - Keep log appends behind the effect ledger so retries do not duplicate
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .. import keys
from ..store import KvStore, mget_batched
from ..types import EntityRef, EntityType
from .effects import EffectLedger
from .indexes import SecondaryIndexMaintainer
from .link_rules import LinkChanges, LinkRules
from .links import LinkRegistry
from .logs import LifecycleLog, LogEvent

logger = logging.getLogger(__name__)


class EntityRepository:
    """Entity reads, the upsert path and explicit deletion.

    Attributes:
        store: Key-value store
        indexes: Secondary index maintainer
        links: Relationship graph
        link_rules: Link derivation from reference fields
        effects: Effect ledger
        log: Lifecycle logs
    """

    def __init__(
        self,
        store: KvStore,
        indexes: SecondaryIndexMaintainer | None = None,
        links: LinkRegistry | None = None,
        effects: EffectLedger | None = None,
        log: LifecycleLog | None = None,
        link_rules: LinkRules | None = None,
        batch_size: int = 200,
    ) -> None:
        self.store = store
        self.log = log or LifecycleLog(store)
        self.indexes = indexes or SecondaryIndexMaintainer(store, batch_size=batch_size)
        self.links = links or LinkRegistry(store, log=self.log, batch_size=batch_size)
        self.effects = effects or EffectLedger(store)
        self.link_rules = link_rules or LinkRules(self.links)
        self.batch_size = batch_size

    async def get(self, entity_type: EntityType | str, entity_id: str) -> dict[str, Any] | None:
        return await self.store.get(keys.data_key(entity_type, entity_id))

    async def get_many(
        self, entity_type: EntityType | str, entity_ids: Iterable[str]
    ) -> list[dict[str, Any] | None]:
        data_keys = [keys.data_key(entity_type, i) for i in entity_ids]
        return await mget_batched(self.store, data_keys, self.batch_size)

    async def exists(self, entity_type: EntityType | str, entity_id: str) -> bool:
        return await self.get(entity_type, entity_id) is not None

    async def list_ids(self, entity_type: EntityType | str) -> list[str]:
        return sorted(await self.store.smembers(keys.all_ids_key(entity_type)))

    async def list_all(self, entity_type: EntityType | str) -> list[dict[str, Any]]:
        records = await self.get_many(entity_type, await self.list_ids(entity_type))
        return [r for r in records if r is not None]

    async def upsert(self, entity_type: EntityType | str, entity: dict[str, Any]) -> dict[str, Any]:
        """Persist an entity and maintain everything derived from it.

        Args:
            entity_type: Type of the entity
            entity: Full record; must carry a string "id"

        Returns:
            The persisted record

        Raises:
            ValueError: If the record has no id
            StoreUnavailableError: If the store fails; derived state may
                then lag the record until repair() runs
        """
        entity_type = EntityType.parse(entity_type)
        entity_id = entity.get("id")
        if not entity_id or not isinstance(entity_id, str):
            raise ValueError(f"{entity_type.value} record needs a string 'id'")

        previous = await self.get(entity_type, entity_id)
        await self.store.set(keys.data_key(entity_type, entity_id), entity)
        await self.store.sadd(keys.all_ids_key(entity_type), entity_id)

        await self.indexes.on_entity_upserted(entity_type, entity, previous)
        changes = await self.link_rules.process(entity_type, entity, previous)
        await self._log_lifecycle(entity_type, entity, previous)

        logger.debug(
            "Entity upserted",
            extra={
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "is_new": previous is None,
                "links_created": len(changes.created),
            },
        )
        return entity

    async def delete(self, entity_type: EntityType | str, entity_id: str) -> bool:
        """Delete an entity together with its links, markers, log entries and index entries.

        Safe to retry after a partial failure.

        Returns:
            True if the record existed
        """
        entity_type = EntityType.parse(entity_type)
        entity = await self.get(entity_type, entity_id)

        if entity is not None:
            await self.indexes.on_entity_removed(entity_type, entity)
        removed_links = await self.links.cascade_delete(EntityRef(entity_type, entity_id))
        cleared = await self.effects.clear_effects_by_prefix(entity_type, entity_id)
        await self.log.remove_entries_for(entity_type, entity_id)
        await self.store.srem(keys.all_ids_key(entity_type), entity_id)
        existed = await self.store.delete(keys.data_key(entity_type, entity_id))

        logger.info(
            "Entity deleted",
            extra={
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "existed": existed,
                "links_removed": len(removed_links),
                "effects_cleared": cleared,
            },
        )
        return existed

    async def process_links(self, entity_type: EntityType | str, entity: dict[str, Any]) -> LinkChanges:
        """Re-derive links of a stored record without rewriting it."""
        return await self.link_rules.process(entity_type, entity, None)

    async def _log_lifecycle(
        self,
        entity_type: EntityType,
        entity: dict[str, Any],
        previous: dict[str, Any] | None,
    ) -> None:
        entity_id = entity["id"]
        details = {"name": entity.get("name")} if entity.get("name") else {}

        async def log_created() -> None:
            await self.log.append(entity_type, LogEvent.CREATED, entity_id, details)

        await self.effects.run_once(keys.EffectKey.created(entity_type, entity_id), log_created)

        old_status = (previous or {}).get("status")
        new_status = entity.get("status")
        if previous is None or new_status is None or old_status == new_status:
            return

        async def log_status() -> None:
            await self.log.append(
                entity_type,
                LogEvent.UPDATED,
                entity_id,
                {"from_status": old_status, "to_status": new_status},
            )

        await self.effects.run_once(
            keys.EffectKey.status(entity_type, entity_id, str(old_status), str(new_status)),
            log_status,
        )
