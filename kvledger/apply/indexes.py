"""
Secondary index maintainer: month buckets derived from entity records.

An index groups the ids of entities that satisfy a predicate (for example
"is collected") into buckets keyed by a month token "MM-YY". The month comes
from the first resolvable timestamp of the index's fallback chain.

Bucket policies (DEFAULT_POLICIES):
    task      collected  collectedAt -> doneAt -> createdAt -> now
    item      sold       soldAt -> createdAt -> now
    sale      collected  collectedAt -> saleDate -> createdAt -> now
    financial collected  collectedAt -> (year, month) -> createdAt -> now

Invariants:
    - An id is in a bucket iff the entity exists, satisfies the predicate,
      and the bucket is its current derived bucket
    - On upsert the new bucket entry is added before the stale one is
      removed, so a failure in between leaves a phantom, never a gap
    - repair() only adds correct entries or removes incorrect ones, so it
      is idempotent and safe alongside normal traffic
    - Timestamps are bucketed in UTC
    - An entity whose chain falls through to the clock is swept from
      every other bucket of the index on its next write

How to change safely:
    - Changing a chain moves historical entities between buckets; run
      repair() on that index after deploying
    - New policies go in DEFAULT_POLICIES together with a test
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

from .. import keys
from ..errors import UnknownIndexError
from ..store import KvStore, mget_batched
from ..types import EntityType, FinancialStatus, ItemStatus, SaleStatus, TaskStatus
from .repair import RepairCounts

logger = logging.getLogger(__name__)

TimestampResolver = Union[str, Callable[[dict[str, Any]], Any]]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Interpret a stored timestamp as an aware UTC datetime.

    Accepts datetime, date, ISO-8601 strings (with or without "Z") and
    epoch milliseconds. Returns None for anything unusable so the next
    resolver of the chain is tried.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def financial_period(entity: dict[str, Any]) -> Optional[datetime]:
    """First day of a financial record's (year, month) period."""
    year, month = entity.get("year"), entity.get("month")
    if not isinstance(year, int) or not isinstance(month, int) or not 1 <= month <= 12:
        return None
    return datetime(year, month, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class IndexPolicy:
    """Membership predicate and bucket derivation of one index.

    Attributes:
        entity_type: Entity type the index covers
        name: Index name, e.g. "collected"
        predicate: Whether an entity belongs in the index at all
        timestamp_chain: Field names or callables tried in order; the
            current time is used when none resolves
    """

    entity_type: EntityType
    name: str
    predicate: Callable[[dict[str, Any]], bool]
    timestamp_chain: tuple[TimestampResolver, ...]

    def matches(self, entity: dict[str, Any] | None) -> bool:
        return entity is not None and bool(self.predicate(entity))

    def chain_timestamp(self, entity: dict[str, Any]) -> Optional[datetime]:
        """First resolvable timestamp of the chain, None when it falls through."""
        for resolver in self.timestamp_chain:
            raw = resolver(entity) if callable(resolver) else entity.get(resolver)
            moment = parse_timestamp(raw)
            if moment is not None:
                return moment
        return None

    def resolve_timestamp(self, entity: dict[str, Any], now: datetime | None = None) -> datetime:
        return self.chain_timestamp(entity) or now or datetime.now(timezone.utc)

    def bucket_for(self, entity: dict[str, Any], now: datetime | None = None) -> str:
        return keys.month_token(self.resolve_timestamp(entity, now))

    def bucket_key(self, bucket: str) -> str:
        return keys.index_key(self.entity_type, self.name, bucket)

    @property
    def prefix(self) -> str:
        return keys.index_prefix(self.entity_type, self.name)


def _status_is(entity: dict[str, Any], *statuses: str) -> bool:
    return entity.get("status") in statuses


DEFAULT_POLICIES: tuple[IndexPolicy, ...] = (
    IndexPolicy(
        entity_type=EntityType.TASK,
        name="collected",
        predicate=lambda e: e.get("isCollected") is True
        or _status_is(e, TaskStatus.COLLECTED.value),
        timestamp_chain=("collectedAt", "doneAt", "createdAt"),
    ),
    IndexPolicy(
        entity_type=EntityType.ITEM,
        name="sold",
        predicate=lambda e: _status_is(e, ItemStatus.SOLD.value),
        timestamp_chain=("soldAt", "createdAt"),
    ),
    IndexPolicy(
        entity_type=EntityType.SALE,
        name="collected",
        predicate=lambda e: e.get("isCollected") is True
        or _status_is(e, SaleStatus.COLLECTED.value),
        timestamp_chain=("collectedAt", "saleDate", "createdAt"),
    ),
    IndexPolicy(
        entity_type=EntityType.FINANCIAL,
        name="collected",
        predicate=lambda e: e.get("isCollected") is True
        or _status_is(e, FinancialStatus.COLLECTED.value),
        timestamp_chain=("collectedAt", financial_period, "createdAt"),
    ),
)


@dataclass(frozen=True)
class IndexEntry:
    """An id expected in (missing) or found in (phantom) a bucket.

    Attributes:
        entity_id: Entity id
        bucket: Month token of the bucket
        reason: For phantoms: "entity_missing", "predicate_false" or "wrong_bucket"
    """

    entity_id: str
    bucket: str
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "bucket": self.bucket, "reason": self.reason}


@dataclass
class IndexReconcileReport:
    """Drift between one index and the primary records."""

    entity_type: EntityType
    index_name: str
    missing: list[IndexEntry] = field(default_factory=list)
    phantom: list[IndexEntry] = field(default_factory=list)
    entities_checked: int = 0
    buckets_checked: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.missing and not self.phantom

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "index_name": self.index_name,
            "missing": [e.to_dict() for e in self.missing],
            "phantom": [e.to_dict() for e in self.phantom],
            "entities_checked": self.entities_checked,
            "buckets_checked": self.buckets_checked,
        }


class SecondaryIndexMaintainer:
    """Keeps month-bucket indexes in agreement with entity records.

    Every entity write path calls on_entity_upserted() after persisting the
    record. reconcile() and repair() are the operational tools that find
    and fix drift left by partial failures or racing writers.

    Example:
        >>> maintainer = SecondaryIndexMaintainer(store)
        >>> await maintainer.on_entity_upserted(EntityType.ITEM, item, previous)
        >>> report = await maintainer.reconcile(EntityType.ITEM, "sold")
    """

    def __init__(
        self,
        store: KvStore,
        policies: Iterable[IndexPolicy] = DEFAULT_POLICIES,
        batch_size: int = 200,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.policies = tuple(policies)
        self.batch_size = batch_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def policies_for(self, entity_type: EntityType | str) -> list[IndexPolicy]:
        entity_type = EntityType.parse(entity_type)
        return [p for p in self.policies if p.entity_type == entity_type]

    def policy(self, entity_type: EntityType | str, index_name: str) -> IndexPolicy:
        """Look up a policy.

        Raises:
            UnknownIndexError: If no such index is registered
        """
        try:
            entity_type = EntityType.parse(entity_type)
        except ValueError as e:
            raise UnknownIndexError(str(e)) from e
        for p in self.policies:
            if p.entity_type == entity_type and p.name == index_name:
                return p
        raise UnknownIndexError(f"No index '{index_name}' for {entity_type.value}")

    async def on_entity_upserted(
        self,
        entity_type: EntityType | str,
        entity: dict[str, Any],
        previous: dict[str, Any] | None = None,
    ) -> None:
        """Move an entity's bucket membership to match its current record.

        Args:
            entity_type: Type of the written entity
            entity: Record as just persisted
            previous: Record before the write, None for a new entity
        """
        entity_id = entity["id"]
        now = self._clock()
        for policy in self.policies_for(entity_type):
            new_bucket = policy.bucket_for(entity, now) if policy.matches(entity) else None
            old_bucket = policy.bucket_for(previous, now) if policy.matches(previous) else None

            if new_bucket is not None:
                await self.store.sadd(policy.bucket_key(new_bucket), entity_id)
            if old_bucket is not None and policy.chain_timestamp(previous) is None:
                # Bucketed by an earlier clock reading, so its month is unknown
                await self._remove_from_other_buckets(policy, entity_id, new_bucket)
            elif old_bucket is not None and old_bucket != new_bucket:
                await self.store.srem(policy.bucket_key(old_bucket), entity_id)

            if new_bucket != old_bucket:
                logger.debug(
                    "Index membership moved",
                    extra={
                        "index": policy.prefix,
                        "entity_id": entity_id,
                        "from_bucket": old_bucket,
                        "to_bucket": new_bucket,
                    },
                )

    async def on_entity_removed(self, entity_type: EntityType | str, entity: dict[str, Any]) -> None:
        now = self._clock()
        for policy in self.policies_for(entity_type):
            if not policy.matches(entity):
                continue
            if policy.chain_timestamp(entity) is None:
                await self._remove_from_other_buckets(policy, entity["id"], None)
            else:
                await self.store.srem(policy.bucket_key(policy.bucket_for(entity, now)), entity["id"])

    async def _remove_from_other_buckets(
        self, policy: IndexPolicy, entity_id: str, keep: str | None
    ) -> None:
        keep_key = policy.bucket_key(keep) if keep is not None else None
        for bucket_key in await self.store.scan_prefix(policy.prefix):
            if bucket_key != keep_key:
                await self.store.srem(bucket_key, entity_id)

    async def buckets(self, entity_type: EntityType | str, index_name: str) -> list[str]:
        policy = self.policy(entity_type, index_name)
        return [k[len(policy.prefix) :] for k in await self.store.scan_prefix(policy.prefix)]

    async def members(self, entity_type: EntityType | str, index_name: str, bucket: str) -> set[str]:
        policy = self.policy(entity_type, index_name)
        return await self.store.smembers(policy.bucket_key(bucket))

    async def reconcile(self, entity_type: EntityType | str, index_name: str) -> IndexReconcileReport:
        """Find missing and phantom entries of one index.

        Two independent scans:
        1. every entity matching the predicate must be in its bucket (missing)
        2. every id in every bucket must exist, match the predicate and
           belong in exactly that bucket (phantom)

        Raises:
            UnknownIndexError: If no such index is registered
        """
        policy = self.policy(entity_type, index_name)
        report = IndexReconcileReport(entity_type=policy.entity_type, index_name=policy.name)
        now = self._clock()
        members_by_bucket: dict[str, set[str]] = {}

        async def members(bucket: str) -> set[str]:
            if bucket not in members_by_bucket:
                members_by_bucket[bucket] = await self.store.smembers(policy.bucket_key(bucket))
            return members_by_bucket[bucket]

        data_prefix = keys.data_prefix(policy.entity_type)
        data_keys = await self.store.scan_prefix(data_prefix)
        for data in await mget_batched(self.store, data_keys, self.batch_size):
            if data is None:
                continue
            report.entities_checked += 1
            if not policy.matches(data):
                continue
            bucket = policy.bucket_for(data, now)
            if data["id"] not in await members(bucket):
                report.missing.append(IndexEntry(data["id"], bucket))

        for bucket_key in await self.store.scan_prefix(policy.prefix):
            bucket = bucket_key[len(policy.prefix) :]
            report.buckets_checked += 1
            ids = sorted(await members(bucket))
            records = await mget_batched(
                self.store,
                [keys.data_key(policy.entity_type, i) for i in ids],
                self.batch_size,
            )
            for entity_id, data in zip(ids, records):
                if data is None:
                    report.phantom.append(IndexEntry(entity_id, bucket, "entity_missing"))
                elif not policy.matches(data):
                    report.phantom.append(IndexEntry(entity_id, bucket, "predicate_false"))
                elif policy.bucket_for(data, now) != bucket:
                    report.phantom.append(IndexEntry(entity_id, bucket, "wrong_bucket"))

        if not report.is_clean:
            logger.warning(
                "Index drift detected",
                extra={
                    "index": policy.prefix,
                    "missing": len(report.missing),
                    "phantom": len(report.phantom),
                },
            )
        return report

    async def repair(
        self,
        entity_type: EntityType | str,
        index_name: str,
        apply: bool = True,
    ) -> RepairCounts:
        """Apply the additions and removals found by reconcile().

        Args:
            entity_type: Entity type of the index
            index_name: Index name
            apply: False for a dry run that only reports

        Returns:
            Before/after counts

        Raises:
            UnknownIndexError: If no such index is registered
        """
        policy = self.policy(entity_type, index_name)
        before = await self.reconcile(policy.entity_type, policy.name)
        counts = RepairCounts(
            before_missing=len(before.missing),
            before_phantom=len(before.phantom),
            dry_run=not apply,
        )
        if not apply:
            counts.after_missing = counts.before_missing
            counts.after_phantom = counts.before_phantom
            return counts

        for entry in before.missing:
            counts.added += await self.store.sadd(policy.bucket_key(entry.bucket), entry.entity_id)
        for entry in before.phantom:
            counts.removed += await self.store.srem(policy.bucket_key(entry.bucket), entry.entity_id)

        after = await self.reconcile(policy.entity_type, policy.name)
        counts.after_missing = len(after.missing)
        counts.after_phantom = len(after.phantom)
        logger.info("Index repair finished", extra={"index": policy.prefix, **counts.to_dict()})
        return counts

    async def clear(self, entity_type: EntityType | str, index_name: str) -> int:
        """Delete every bucket of one index.

        Returns:
            Number of bucket keys deleted
        """
        policy = self.policy(entity_type, index_name)
        deleted = 0
        for bucket_key in await self.store.scan_prefix(policy.prefix):
            if await self.store.delete(bucket_key):
                deleted += 1
        return deleted
