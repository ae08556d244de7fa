"""
Archive collection workflow: marks entities collected and snapshots them
into monthly archive buckets.

Collecting an entity:
1. Updates the record through the upsert path (isCollected, collectedAt
   and, where the type has one, the collected status), which moves its
   secondary index membership to the collection month
2. Writes an archive snapshot at archive:{kind}:{MM-YY}:{id}, guarded by a
   per-month effect marker so a redelivered collection writes nothing new
3. Adds the id to the month's archive set and the month to the months set

Invariants:
    - A redelivered collection keeps the original collectedAt
    - One snapshot per entity and month
    - collect_many() is all-or-nothing through the transaction manager

How to change safely:
    - Snapshot fields are additive; archived data is never migrated
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from .. import keys
from ..apply import EntityRepository, LogEvent
from ..apply.indexes import parse_timestamp
from ..errors import ConcurrentTransactionError, EntityNotFoundError
from ..store import mget_batched
from ..tx import TransactionManager
from ..types import EntityType, FinancialStatus, SaleStatus, TaskStatus
from .base import WorkflowResult

logger = logging.getLogger(__name__)

_COLLECTED_STATUS = {
    EntityType.TASK: TaskStatus.COLLECTED.value,
    EntityType.SALE: SaleStatus.COLLECTED.value,
    EntityType.FINANCIAL: FinancialStatus.COLLECTED.value,
}


def snapshot_kind(entity_type: EntityType | str) -> str:
    """Archive namespace of an entity type, e.g. "task-snapshots"."""
    return f"{EntityType.parse(entity_type).value}-snapshots"


def sort_months_desc(months: Iterable[str]) -> list[str]:
    """Sort "MM-YY" tokens newest first."""

    def sort_key(token: str) -> tuple[int, int]:
        month, _, year = token.partition("-")
        return (int(year), int(month))

    return sorted(months, key=sort_key, reverse=True)


@dataclass
class ArchiveResult:
    """Outcome of collecting one entity.

    Attributes:
        entity_type: Collected entity type
        entity_id: Collected entity id
        month: Archive month token
        archived: False if the snapshot already existed
    """

    entity_type: EntityType
    entity_id: str
    month: str
    archived: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "month": self.month,
            "archived": self.archived,
        }


class ArchiveCollectionWorkflow:
    """Collects entities into monthly archives."""

    def __init__(
        self,
        repo: EntityRepository,
        tx: TransactionManager,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repo = repo
        self.store = repo.store
        self.tx = tx
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def collect(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        collected_at: datetime | None = None,
    ) -> ArchiveResult:
        """Collect one entity.

        Args:
            entity_type: Entity type
            entity_id: Entity id
            collected_at: Collection moment; defaults to the stored
                collectedAt of an already collected entity, else now

        Raises:
            EntityNotFoundError: If the entity does not exist
        """
        entity_type = EntityType.parse(entity_type)
        entity = await self.repo.get(entity_type, entity_id)
        if entity is None:
            raise EntityNotFoundError(f"{entity_type.value} {entity_id} not found")

        if collected_at is None and entity.get("isCollected"):
            collected_at = parse_timestamp(entity.get("collectedAt"))
        moment = parse_timestamp(collected_at or self._clock())
        month = keys.month_token(moment)

        updated = dict(entity)
        updated["isCollected"] = True
        updated["collectedAt"] = moment.isoformat()
        if entity_type in _COLLECTED_STATUS:
            updated["status"] = _COLLECTED_STATUS[entity_type]
        await self.repo.upsert(entity_type, updated)

        kind = snapshot_kind(entity_type)

        async def write_snapshot() -> None:
            snapshot = {
                "id": f"{entity_id}-{month}",
                "sourceId": entity_id,
                "sourceType": entity_type.value.upper(),
                "snapshotDate": self._clock().isoformat(),
                "collectedAt": updated["collectedAt"],
                "reason": "collected",
                "data": updated,
            }
            await self.store.set(keys.archive_data_key(kind, month, entity_id), snapshot)
            await self.store.sadd(keys.archive_index_key(kind, month), entity_id)
            await self.store.sadd(keys.archive_months_key(), month)
            await self.repo.log.append(
                entity_type, LogEvent.COLLECTED, entity_id, {"month": month, "collectedAt": moment.isoformat()}
            )

        archived = await self.repo.effects.run_once(
            keys.EffectKey.monthly(entity_type, entity_id, "archived", month),
            write_snapshot,
        )
        logger.info(
            "Entity collected",
            extra={
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "month": month,
                "archived": archived,
            },
        )
        return ArchiveResult(entity_type, entity_id, month, archived)

    async def collect_many(
        self,
        entity_type: EntityType | str,
        entity_ids: Iterable[str],
        collected_at: datetime | None = None,
    ) -> WorkflowResult:
        """Collect several entities in one transaction.

        Raises:
            ConcurrentTransactionError: If another workflow is running
        """
        entity_type = EntityType.parse(entity_type)
        entity_ids = list(entity_ids)
        collected: list[ArchiveResult] = []

        async def run() -> None:
            for entity_id in entity_ids:
                collected.append(await self.collect(entity_type, entity_id, collected_at))
                self.tx.track_entity_creation(entity_type, entity_id)

        try:
            await self.tx.execute(run)
        except ConcurrentTransactionError:
            raise
        except Exception as error:
            logger.error(
                "Archive collection failed",
                extra={"entity_type": entity_type.value, "error": repr(error)},
            )
            return WorkflowResult.from_failure("Archive collection", error)

        return WorkflowResult(
            success=True,
            message=f"Collected {len(collected)} {entity_type.value} entities",
            results=[f"Collected {r.entity_id} into {r.month}" for r in collected],
            details={"collected": [r.to_dict() for r in collected]},
        )

    async def archived(self, entity_type: EntityType | str, month: str) -> list[dict[str, Any]]:
        """Archive snapshots of one entity type and month."""
        kind = snapshot_kind(entity_type)
        ids = sorted(await self.store.smembers(keys.archive_index_key(kind, month)))
        records = await mget_batched(
            self.store, [keys.archive_data_key(kind, month, i) for i in ids]
        )
        return [r for r in records if r is not None]

    async def archive_months(self) -> list[str]:
        """Months holding archives, newest first."""
        return sort_months_desc(await self.store.smembers(keys.archive_months_key()))
