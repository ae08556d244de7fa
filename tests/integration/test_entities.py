"""
Integration tests for the entity upsert path and explicit deletion.

Tests cover:
- Derived state maintained on upsert (id set, indexes, links, logs)
- Redelivered upserts writing no duplicate logs
- Deletion cascading to links, markers, logs and indexes
- Retry of a partially failed deletion
"""

import pytest

from kvledger import keys
from kvledger.keys import EffectKey
from kvledger.store import StoreUnavailableError
from kvledger.types import EntityRef, EntityType, ItemStatus, TaskStatus


class TestEntityUpsert:
    """Tests for EntityRepository.upsert()."""

    @pytest.mark.asyncio
    async def test_upsert_maintains_derived_state(self, repo):
        item = {
            "id": "item-9",
            "name": "Print",
            "status": ItemStatus.SOLD.value,
            "soldAt": "2025-11-03",
            "siteId": "hq",
        }

        await repo.upsert(EntityType.ITEM, item)

        assert await repo.get(EntityType.ITEM, "item-9") == item
        assert await repo.list_ids(EntityType.ITEM) == ["item-9"]
        assert await repo.indexes.members(EntityType.ITEM, "sold", "11-25") == {"item-9"}
        links = await repo.links.get_links_for(EntityRef(EntityType.ITEM, "item-9"))
        assert [l.target for l in links] == [EntityRef(EntityType.SITE, "hq")]
        entries = await repo.log.entries(EntityType.ITEM)
        assert [(e.event, e.entity_id) for e in entries] == [("created", "item-9")]

    @pytest.mark.asyncio
    async def test_redelivered_upsert_logs_once(self, repo):
        task = {"id": "task-1", "status": TaskStatus.DONE.value}
        await repo.upsert(EntityType.TASK, task)
        await repo.upsert(EntityType.TASK, dict(task))
        assert len(await repo.log.entries(EntityType.TASK)) == 1

    @pytest.mark.asyncio
    async def test_status_change_logged_once(self, repo):
        done = {"id": "task-1", "status": TaskStatus.DONE.value}
        collected = dict(done, status=TaskStatus.COLLECTED.value)
        await repo.upsert(EntityType.TASK, done)
        await repo.upsert(EntityType.TASK, collected)

        # A retry sees the record already collected and logs nothing new
        await repo.upsert(EntityType.TASK, dict(collected))

        events = [e.event for e in await repo.log.entries(EntityType.TASK)]
        assert events == ["created", "updated"]
        assert await repo.effects.has_effect(
            EffectKey.status(EntityType.TASK, "task-1", "Done", "Collected")
        )

    @pytest.mark.asyncio
    async def test_upsert_requires_id(self, repo):
        with pytest.raises(ValueError):
            await repo.upsert(EntityType.TASK, {"name": "no id"})

    @pytest.mark.asyncio
    async def test_failure_after_record_write_is_repairable(self, store, repo):
        """A crash between record and index write leaves drift that repair fixes."""
        store.fail_on("sadd", "index:items:sold:")
        item = {"id": "item-1", "status": ItemStatus.SOLD.value, "soldAt": "2025-11-03"}

        with pytest.raises(StoreUnavailableError):
            await repo.upsert(EntityType.ITEM, item)

        report = await repo.indexes.reconcile(EntityType.ITEM, "sold")
        assert [e.entity_id for e in report.missing] == ["item-1"]
        counts = await repo.indexes.repair(EntityType.ITEM, "sold")
        assert counts.is_clean


class TestEntityDelete:
    """Tests for EntityRepository.delete()."""

    @pytest.mark.asyncio
    async def test_delete_cascades(self, store, repo):
        await repo.upsert(
            EntityType.TASK,
            {
                "id": "task-1",
                "name": "Mural",
                "isCollected": True,
                "collectedAt": "2025-11-05",
                "siteId": "hq",
                "playerId": "player-one",
            },
        )
        await repo.upsert(EntityType.SITE, {"id": "hq", "name": "HQ"})

        assert await repo.delete(EntityType.TASK, "task-1") is True

        assert await repo.get(EntityType.TASK, "task-1") is None
        assert await repo.list_ids(EntityType.TASK) == []
        assert await repo.indexes.buckets(EntityType.TASK, "collected") == []
        assert await repo.links.get_links_for(EntityRef(EntityType.SITE, "hq")) == []
        assert await repo.links.get_links_for(EntityRef(EntityType.PLAYER, "player-one")) == []
        assert await store.scan_prefix(keys.effect_prefix(EntityType.TASK, "task-1")) == []
        assert await repo.log.entries_for(EntityType.TASK, "task-1") == []
        assert (await repo.links.reconcile()).is_clean
        # The site itself is untouched
        assert await repo.get(EntityType.SITE, "hq") == {"id": "hq", "name": "HQ"}

    @pytest.mark.asyncio
    async def test_delete_missing_entity(self, repo):
        assert await repo.delete(EntityType.TASK, "nope") is False

    @pytest.mark.asyncio
    async def test_partial_delete_can_be_retried(self, store, repo):
        await repo.upsert(EntityType.ITEM, {"id": "item-1", "siteId": "hq"})
        store.fail_on("delete", "effects:item:item-1:")

        with pytest.raises(StoreUnavailableError):
            await repo.delete(EntityType.ITEM, "item-1")
        # The record is deleted last, so it is still there to retry from
        assert await repo.exists(EntityType.ITEM, "item-1")

        assert await repo.delete(EntityType.ITEM, "item-1") is True
        assert await store.scan_prefix(keys.effect_prefix(EntityType.ITEM, "item-1")) == []
        assert (await repo.links.reconcile()).is_clean

    @pytest.mark.asyncio
    async def test_recreated_entity_logs_creation_again(self, repo):
        await repo.upsert(EntityType.SALE, {"id": "sale-1"})
        await repo.delete(EntityType.SALE, "sale-1")
        await repo.upsert(EntityType.SALE, {"id": "sale-1"})
        assert [e.event for e in await repo.log.entries(EntityType.SALE)] == ["created"]
