"""
Unit tests for the secondary index maintainer.

Tests cover:
- Timestamp parsing and fallback chains
- Bucket membership on upsert, move and removal
- Reconciliation (missing, phantom with reasons)
- Repair convergence and dry runs
"""

from datetime import datetime, timezone

import pytest

from kvledger import keys
from kvledger.apply import SecondaryIndexMaintainer
from kvledger.apply.indexes import parse_timestamp
from kvledger.errors import UnknownIndexError
from kvledger.types import EntityType, ItemStatus, TaskStatus

NOW = datetime(2025, 12, 20, 12, 0, tzinfo=timezone.utc)


class TestParseTimestamp:
    """Tests for parse_timestamp()."""

    def test_iso_with_z(self):
        assert parse_timestamp("2025-11-03T10:00:00Z") == datetime(2025, 11, 3, 10, tzinfo=timezone.utc)

    def test_date_only_string(self):
        assert parse_timestamp("2025-11-03") == datetime(2025, 11, 3, tzinfo=timezone.utc)

    def test_epoch_millis(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_unusable_values(self):
        for value in (None, "", "not a date", True, {"a": 1}):
            assert parse_timestamp(value) is None


class TestIndexMembership:
    """Tests for on_entity_upserted() and on_entity_removed()."""

    @pytest.fixture
    def indexes(self, store):
        return SecondaryIndexMaintainer(store, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_sold_item_lands_in_its_month(self, indexes):
        item = {"id": "item-9", "status": ItemStatus.SOLD.value, "soldAt": "2025-11-03"}

        await indexes.on_entity_upserted(EntityType.ITEM, item)

        assert await indexes.buckets(EntityType.ITEM, "sold") == ["11-25"]
        assert await indexes.members(EntityType.ITEM, "sold", "11-25") == {"item-9"}

    @pytest.mark.asyncio
    async def test_non_matching_entity_is_not_indexed(self, indexes):
        await indexes.on_entity_upserted(EntityType.ITEM, {"id": "item-1", "status": "For Sale"})
        assert await indexes.buckets(EntityType.ITEM, "sold") == []

    @pytest.mark.asyncio
    async def test_timestamp_change_moves_bucket(self, indexes):
        before = {"id": "task-1", "isCollected": True, "collectedAt": "2025-10-31T23:00:00Z"}
        after = dict(before, collectedAt="2025-11-01T08:00:00Z")

        await indexes.on_entity_upserted(EntityType.TASK, before)
        await indexes.on_entity_upserted(EntityType.TASK, after, before)

        assert await indexes.buckets(EntityType.TASK, "collected") == ["11-25"]

    @pytest.mark.asyncio
    async def test_predicate_turning_false_removes(self, indexes):
        sold = {"id": "item-1", "status": ItemStatus.SOLD.value, "soldAt": "2025-11-03"}
        await indexes.on_entity_upserted(EntityType.ITEM, sold)
        await indexes.on_entity_upserted(EntityType.ITEM, dict(sold, status="For Sale"), sold)
        assert await indexes.buckets(EntityType.ITEM, "sold") == []

    @pytest.mark.asyncio
    async def test_fallback_chain(self, indexes):
        """Tasks without collectedAt fall back to doneAt, then createdAt, then now."""
        await indexes.on_entity_upserted(
            EntityType.TASK, {"id": "t-done", "status": TaskStatus.COLLECTED.value, "doneAt": "2025-08-10"}
        )
        await indexes.on_entity_upserted(
            EntityType.TASK, {"id": "t-created", "isCollected": True, "createdAt": "2025-07-01"}
        )
        await indexes.on_entity_upserted(EntityType.TASK, {"id": "t-now", "isCollected": True})

        assert await indexes.members(EntityType.TASK, "collected", "08-25") == {"t-done"}
        assert await indexes.members(EntityType.TASK, "collected", "07-25") == {"t-created"}
        assert await indexes.members(EntityType.TASK, "collected", "12-25") == {"t-now"}

    @pytest.mark.asyncio
    async def test_financial_period(self, indexes):
        record = {"id": "fin-1", "isCollected": True, "year": 2025, "month": 3}
        await indexes.on_entity_upserted(EntityType.FINANCIAL, record)
        assert await indexes.buckets(EntityType.FINANCIAL, "collected") == ["03-25"]

    @pytest.mark.asyncio
    async def test_removal(self, indexes):
        item = {"id": "item-9", "status": ItemStatus.SOLD.value, "soldAt": "2025-11-03"}
        await indexes.on_entity_upserted(EntityType.ITEM, item)
        await indexes.on_entity_removed(EntityType.ITEM, item)
        assert await indexes.buckets(EntityType.ITEM, "sold") == []

    @pytest.mark.asyncio
    async def test_clock_bucket_moves_when_month_changes(self, store):
        moments = [datetime(2025, 10, 15, tzinfo=timezone.utc)]
        indexes = SecondaryIndexMaintainer(store, clock=lambda: moments[0])
        item = {"id": "item-1", "status": ItemStatus.SOLD.value}

        await indexes.on_entity_upserted(EntityType.ITEM, item)
        moments[0] = datetime(2025, 11, 2, tzinfo=timezone.utc)
        await indexes.on_entity_upserted(EntityType.ITEM, dict(item, price=10), item)

        assert await indexes.buckets(EntityType.ITEM, "sold") == ["11-25"]
        await store.set(keys.data_key(EntityType.ITEM, "item-1"), dict(item, price=10))
        assert (await indexes.reconcile(EntityType.ITEM, "sold")).is_clean

    @pytest.mark.asyncio
    async def test_clock_bucket_removal_after_month_change(self, store):
        moments = [datetime(2025, 10, 15, tzinfo=timezone.utc)]
        indexes = SecondaryIndexMaintainer(store, clock=lambda: moments[0])
        item = {"id": "item-1", "status": ItemStatus.SOLD.value}

        await indexes.on_entity_upserted(EntityType.ITEM, item)
        moments[0] = datetime(2025, 11, 2, tzinfo=timezone.utc)
        await indexes.on_entity_removed(EntityType.ITEM, item)

        assert await indexes.buckets(EntityType.ITEM, "sold") == []

    @pytest.mark.asyncio
    async def test_unknown_index(self, indexes):
        with pytest.raises(UnknownIndexError):
            await indexes.reconcile(EntityType.ITEM, "collected")
        with pytest.raises(UnknownIndexError):
            indexes.policy("spaceship", "sold")


class TestIndexReconciliation:
    """Tests for reconcile() and repair()."""

    @pytest.fixture
    def indexes(self, store):
        return SecondaryIndexMaintainer(store, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_phantom_for_missing_entity_is_repaired(self, store, indexes):
        await store.sadd("index:tasks:collected:11-25", "task-7")

        report = await indexes.reconcile(EntityType.TASK, "collected")
        assert [(e.entity_id, e.bucket, e.reason) for e in report.phantom] == [
            ("task-7", "11-25", "entity_missing")
        ]

        counts = await indexes.repair(EntityType.TASK, "collected")
        assert counts.removed == 1

        again = await indexes.reconcile(EntityType.TASK, "collected")
        assert again.phantom == []
        assert again.is_clean

    @pytest.mark.asyncio
    async def test_missing_entry(self, store, indexes):
        await store.set(
            keys.data_key(EntityType.ITEM, "item-3"),
            {"id": "item-3", "status": ItemStatus.SOLD.value, "soldAt": "2025-09-09"},
        )

        report = await indexes.reconcile(EntityType.ITEM, "sold")
        assert [(e.entity_id, e.bucket) for e in report.missing] == [("item-3", "09-25")]
        assert report.entities_checked == 1

    @pytest.mark.asyncio
    async def test_phantom_reasons(self, store, indexes):
        await store.set(keys.data_key(EntityType.ITEM, "unsold"), {"id": "unsold", "status": "For Sale"})
        await store.set(
            keys.data_key(EntityType.ITEM, "moved"),
            {"id": "moved", "status": ItemStatus.SOLD.value, "soldAt": "2025-09-09"},
        )
        await store.sadd("index:items:sold:01-25", "unsold", "moved")
        await store.sadd("index:items:sold:09-25", "moved")

        report = await indexes.reconcile(EntityType.ITEM, "sold")

        reasons = {(e.entity_id, e.reason) for e in report.phantom}
        assert reasons == {("unsold", "predicate_false"), ("moved", "wrong_bucket")}
        assert report.missing == []

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store, indexes):
        await store.sadd("index:tasks:collected:11-25", "task-7")
        before = store.dump()

        counts = await indexes.repair(EntityType.TASK, "collected", apply=False)

        assert counts.dry_run
        assert counts.after_phantom == 1
        assert store.dump() == before

    @pytest.mark.asyncio
    async def test_repair_is_idempotent(self, store, indexes):
        await store.sadd("index:items:sold:01-25", "ghost")
        await store.set(
            keys.data_key(EntityType.ITEM, "item-3"),
            {"id": "item-3", "status": ItemStatus.SOLD.value, "soldAt": "2025-09-09"},
        )

        first = await indexes.repair(EntityType.ITEM, "sold")
        second = await indexes.repair(EntityType.ITEM, "sold")

        assert (first.added, first.removed) == (1, 1)
        assert first.is_clean
        assert second.changes == 0

    @pytest.mark.asyncio
    async def test_clear(self, store, indexes):
        await store.sadd("index:items:sold:01-25", "a")
        await store.sadd("index:items:sold:02-25", "b")
        assert await indexes.clear(EntityType.ITEM, "sold") == 2
        assert await indexes.buckets(EntityType.ITEM, "sold") == []
