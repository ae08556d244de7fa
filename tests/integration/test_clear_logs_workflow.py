"""
Integration tests for the clear logs workflow.
"""

import pytest

from kvledger.types import EntityType
from kvledger.workflows import ClearLogsWorkflow


class TestClearLogsWorkflow:
    """Tests for ClearLogsWorkflow."""

    @pytest.fixture
    def workflow(self, repo, tx):
        return ClearLogsWorkflow(repo.log, tx)

    @pytest.mark.asyncio
    async def test_clears_entity_and_link_logs(self, repo, workflow):
        await repo.upsert(EntityType.TASK, {"id": "task-1", "siteId": "hq"})
        await repo.upsert(EntityType.SITE, {"id": "hq"})
        await repo.upsert(EntityType.ACCOUNT, {"id": "account-one"})

        result = await workflow.execute()

        assert result.success, result.message
        assert await repo.log.entries(EntityType.TASK) == []
        assert await repo.log.entries(EntityType.SITE) == []
        assert await repo.log.entries("links") == []
        # Account history is kept
        assert len(await repo.log.entries(EntityType.ACCOUNT)) == 1
        # Records and links are untouched
        assert await repo.get(EntityType.TASK, "task-1") is not None
        assert len(await repo.links.get_all_links()) == 1

    @pytest.mark.asyncio
    async def test_reports_absent_logs(self, workflow):
        result = await workflow.execute()
        assert result.success
        assert "No task logs" in result.results

    @pytest.mark.asyncio
    async def test_failure_restores_logs(self, store, repo, workflow):
        await repo.upsert(EntityType.TASK, {"id": "task-1"})
        await repo.upsert(EntityType.PLAYER, {"id": "player-1"})
        before = store.dump()
        store.fail_on("delete", "logs:player")

        result = await workflow.execute()

        assert not result.success
        assert result.rolled_back
        assert store.dump() == before
