"""
Integration tests for the archive collection workflow.

Tests cover:
- Collecting entities into monthly snapshots
- Redelivered collections
- All-or-nothing collect_many()
- Archive month listing
"""

from datetime import datetime, timezone

import pytest

from kvledger import keys
from kvledger.apply import LogEvent
from kvledger.errors import EntityNotFoundError
from kvledger.types import EntityType, ItemStatus, SaleStatus, TaskStatus
from kvledger.workflows import ArchiveCollectionWorkflow
from kvledger.workflows.archive import sort_months_desc

NOV = datetime(2025, 11, 14, 9, 30, tzinfo=timezone.utc)
NOW = datetime(2026, 1, 5, tzinfo=timezone.utc)


class TestArchiveCollection:
    """Tests for ArchiveCollectionWorkflow."""

    @pytest.fixture
    def workflow(self, repo, tx):
        return ArchiveCollectionWorkflow(repo, tx, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_collect_task(self, store, repo, workflow):
        await repo.upsert(EntityType.TASK, {"id": "task-1", "status": TaskStatus.DONE.value})

        result = await workflow.collect(EntityType.TASK, "task-1", NOV)

        assert (result.month, result.archived) == ("11-25", True)
        task = await repo.get(EntityType.TASK, "task-1")
        assert task["isCollected"] is True
        assert task["status"] == TaskStatus.COLLECTED.value
        assert await repo.indexes.members(EntityType.TASK, "collected", "11-25") == {"task-1"}

        snapshots = await workflow.archived(EntityType.TASK, "11-25")
        assert len(snapshots) == 1
        assert snapshots[0]["sourceId"] == "task-1"
        assert snapshots[0]["reason"] == "collected"
        assert snapshots[0]["data"]["status"] == TaskStatus.COLLECTED.value
        assert await store.get(keys.archive_data_key("task-snapshots", "11-25", "task-1")) is not None
        assert await workflow.archive_months() == ["11-25"]

    @pytest.mark.asyncio
    async def test_collect_sale_and_item_statuses(self, repo, workflow):
        await repo.upsert(EntityType.SALE, {"id": "sale-1", "status": SaleStatus.CHARGED.value})
        await repo.upsert(EntityType.ITEM, {"id": "item-1", "status": ItemStatus.SOLD.value})

        await workflow.collect(EntityType.SALE, "sale-1", NOV)
        await workflow.collect(EntityType.ITEM, "item-1", NOV)

        assert (await repo.get(EntityType.SALE, "sale-1"))["status"] == SaleStatus.COLLECTED.value
        # Items keep their own status
        assert (await repo.get(EntityType.ITEM, "item-1"))["status"] == ItemStatus.SOLD.value

    @pytest.mark.asyncio
    async def test_redelivered_collection_keeps_first_moment(self, repo, workflow):
        await repo.upsert(EntityType.TASK, {"id": "task-1"})
        await workflow.collect(EntityType.TASK, "task-1", NOV)
        logged = len(await repo.log.entries(EntityType.TASK))

        again = await workflow.collect(EntityType.TASK, "task-1")

        assert again.month == "11-25"
        assert again.archived is False
        assert len(await workflow.archived(EntityType.TASK, "11-25")) == 1
        assert len(await repo.log.entries(EntityType.TASK)) == logged

    @pytest.mark.asyncio
    async def test_collection_is_logged_once(self, repo, workflow):
        await repo.upsert(EntityType.TASK, {"id": "task-1"})
        await workflow.collect(EntityType.TASK, "task-1", NOV)
        await workflow.collect(EntityType.TASK, "task-1", NOV)

        collected = [
            e for e in await repo.log.entries_for(EntityType.TASK, "task-1")
            if e.event == LogEvent.COLLECTED.value
        ]
        assert len(collected) == 1
        assert collected[0].details["month"] == "11-25"

    @pytest.mark.asyncio
    async def test_collect_defaults_to_now(self, repo, workflow):
        await repo.upsert(EntityType.FINANCIAL, {"id": "fin-1"})
        result = await workflow.collect("financials", "fin-1")
        assert result.month == "01-26"

    @pytest.mark.asyncio
    async def test_collect_missing_entity(self, workflow):
        with pytest.raises(EntityNotFoundError):
            await workflow.collect(EntityType.TASK, "nope")

    @pytest.mark.asyncio
    async def test_collect_many_is_all_or_nothing(self, store, repo, workflow):
        await repo.upsert(EntityType.TASK, {"id": "task-1"})
        before = store.dump()

        result = await workflow.collect_many(EntityType.TASK, ["task-1", "missing"], NOV)

        assert not result.success
        assert result.rolled_back
        assert store.dump() == before

    @pytest.mark.asyncio
    async def test_collect_many(self, repo, workflow):
        for task_id in ("task-1", "task-2"):
            await repo.upsert(EntityType.TASK, {"id": task_id})

        result = await workflow.collect_many(EntityType.TASK, ["task-1", "task-2"], NOV)

        assert result.success, result.message
        assert [c["entity_id"] for c in result.details["collected"]] == ["task-1", "task-2"]
        assert len(await workflow.archived(EntityType.TASK, "11-25")) == 2


class TestArchiveMonths:
    """Tests for month ordering."""

    def test_newest_first_across_years(self):
        assert sort_months_desc(["12-24", "01-25", "03-24", "11-25"]) == ["11-25", "01-25", "12-24", "03-24"]
