"""
Integration tests for the admin API.

Runs the FastAPI app in-process over an in-memory ledger.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio

from kvledger.api import Settings, create_app
from kvledger.config import LedgerConfig
from kvledger.ledger import Ledger
from kvledger.types import EntityType


@pytest_asyncio.fixture
async def ledger(store):
    return Ledger(LedgerConfig(), store=store)


@pytest_asyncio.fixture
async def client(ledger):
    app = create_app(ledger, Settings(cors_origins=["*"]))
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c


class TestHealthAndIndexes:
    """Tests for health and index endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/v1/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["store_backend"] == "memory"
        assert body["transaction_phase"] == "idle"

    @pytest.mark.asyncio
    async def test_list_indexes(self, client):
        response = await client.get("/v1/admin/indexes")
        assert response.status_code == 200
        names = {(i["entity_type"], i["name"]) for i in response.json()}
        assert names == {
            ("task", "collected"),
            ("item", "sold"),
            ("sale", "collected"),
            ("financial", "collected"),
        }

    @pytest.mark.asyncio
    async def test_reconcile_and_repair_index(self, client, store):
        await store.sadd("index:tasks:collected:11-25", "task-7")

        report = (await client.post("/v1/admin/indexes/task/collected/reconcile")).json()
        assert report["is_clean"] is False
        assert report["phantom"] == [{"entity_id": "task-7", "bucket": "11-25", "reason": "entity_missing"}]

        dry = (await client.post("/v1/admin/indexes/task/collected/repair")).json()
        assert dry["dry_run"] is True
        assert dry["removed"] == 0

        applied = (await client.post("/v1/admin/indexes/tasks/collected/repair?dry_run=false")).json()
        assert applied["removed"] == 1
        assert applied["after_phantom"] == 0

        members = await client.get("/v1/admin/indexes/task/collected/11-25")
        assert members.json()["members"] == []

    @pytest.mark.asyncio
    async def test_unknown_index(self, client):
        response = await client.post("/v1/admin/indexes/item/collected/reconcile")
        assert response.status_code == 404
        assert response.json()["error_code"] == "UNKNOWN_INDEX"

    @pytest.mark.asyncio
    async def test_store_unavailable(self, client, store):
        store.fail_on("scan_prefix", times=None)
        response = await client.get("/v1/admin/indexes")
        assert response.status_code == 503
        assert response.json()["error_code"] == "STORE_UNAVAILABLE"


class TestLinkEndpoints:
    """Tests for link reconciliation endpoints."""

    @pytest.mark.asyncio
    async def test_reconcile_and_repair(self, client, store):
        await store.sadd("index:links:by-entity:task:ghost", "no-such-link")

        report = (await client.post("/v1/admin/links/reconcile")).json()
        assert report["is_clean"] is False
        assert len(report["phantom"]) == 1

        counts = (await client.post("/v1/admin/links/repair", params={"dry_run": "false"})).json()
        assert counts["removed"] == 1
        assert (await client.post("/v1/admin/links/reconcile")).json()["is_clean"] is True


class TestWorkflowEndpoints:
    """Tests for workflow trigger endpoints."""

    @pytest.mark.asyncio
    async def test_reset_defaults_then_read(self, client):
        response = await client.post("/v1/admin/reset", json={"mode": "defaults"})
        assert response.status_code == 200
        assert response.json()["success"] is True

        player = await client.get("/v1/entities/player/player-one")
        assert player.status_code == 200
        assert player.json()["name"] == "Player One"

        links = (await client.get("/v1/entities/character/character-one/links")).json()
        assert len(links["links"]) == 4

    @pytest.mark.asyncio
    async def test_reset_rejects_unknown_mode(self, client):
        response = await client.post("/v1/admin/reset", json={"mode": "everything"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_reset_while_busy(self, client, ledger):
        started = asyncio.Event()
        release = asyncio.Event()

        async def hold():
            started.set()
            await release.wait()

        holder = asyncio.create_task(ledger.tx.execute(hold))
        await started.wait()

        response = await client.post("/v1/admin/reset", json={"mode": "clear"})
        assert response.status_code == 409
        assert response.json()["error_code"] == "TRANSACTION_ACTIVE"

        release.set()
        await holder

    @pytest.mark.asyncio
    async def test_failed_workflow_returns_500(self, client, store):
        store.fail_on("set", "data:character:")
        response = await client.post("/v1/admin/reset", json={"mode": "defaults"})
        assert response.status_code == 500
        assert response.json()["rolled_back"] is True

    @pytest.mark.asyncio
    async def test_clear_logs(self, client, ledger):
        await ledger.repo.upsert(EntityType.TASK, {"id": "task-1"})
        response = await client.post("/v1/admin/clear-logs")
        assert response.status_code == 200
        assert await ledger.repo.log.entries(EntityType.TASK) == []

    @pytest.mark.asyncio
    async def test_archive_flow(self, client, ledger):
        await ledger.repo.upsert(EntityType.TASK, {"id": "task-1"})

        response = await client.post(
            "/v1/admin/archive/tasks/collect",
            json={"ids": ["task-1"], "collected_at": "2025-11-14T09:30:00Z"},
        )
        assert response.status_code == 200, response.text

        assert (await client.get("/v1/admin/archive/months")).json() == {"months": ["11-25"]}
        archived = (await client.get("/v1/admin/archive/task/11-25")).json()
        assert archived["total"] == 1
        assert archived["items"][0]["sourceId"] == "task-1"

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, client):
        response = await client.get("/v1/entities/spaceship/x")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_entity(self, client):
        response = await client.get("/v1/entities/task/nope")
        assert response.status_code == 404
