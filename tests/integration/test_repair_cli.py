"""
Integration tests for the repair CLI tool.
"""

import asyncio

import pytest

from kvledger.config import LedgerConfig
from kvledger.ledger import Ledger
from kvledger.store import InMemoryKvStore, SqliteKvStore
from kvledger.tools import RepairConfig, RepairTool
from kvledger.tools.repair_cli import main


def seed_drift(data_dir):
    """Write one phantom bucket entry and one missing link side entry."""

    async def run():
        store = SqliteKvStore(data_dir, wal_mode=False)
        await store.connect()
        await store.sadd("index:tasks:collected:11-25", "task-7")
        await store.sadd("index:links:by-entity:item:ghost", "no-such-link")
        await store.close()

    asyncio.run(run())


class TestRepairCli:
    """Tests for the kvledger-repair entry point."""

    def test_dry_run_exits_nonzero_on_drift(self, tmp_path, capsys):
        seed_drift(str(tmp_path))

        with pytest.raises(SystemExit) as exc_info:
            main(["--backend", "sqlite", "--data-dir", str(tmp_path), "all"])

        assert exc_info.value.code == 1
        out = capsys.readouterr().out
        assert "dry run" in out
        assert "tasks:collected" in out

    def test_apply_then_clean(self, tmp_path):
        seed_drift(str(tmp_path))

        with pytest.raises(SystemExit) as applied:
            main(["--backend", "sqlite", "--data-dir", str(tmp_path), "all", "--apply"])
        assert applied.value.code == 0

        with pytest.raises(SystemExit) as checked:
            main(["--backend", "sqlite", "--data-dir", str(tmp_path), "all"])
        assert checked.value.code == 0

    def test_index_requires_entity_type(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--backend", "sqlite", "--data-dir", str(tmp_path), "indexes", "--index", "sold"])
        assert exc_info.value.code == 2


class TestRepairTool:
    """Tests for RepairTool over an in-memory ledger."""

    @pytest.mark.asyncio
    async def test_single_index(self, store):
        ledger = Ledger(LedgerConfig(), store=store)
        await store.sadd("index:items:sold:01-25", "ghost")

        config = RepairConfig(target="indexes", apply=True, entity_type="item", index_name="sold")
        result = await RepairTool(config, ledger).run()

        assert result.success
        assert list(result.counts) == ["items:sold"]
        assert result.counts["items:sold"].removed == 1

    @pytest.mark.asyncio
    async def test_unknown_index_is_an_error(self, store):
        ledger = Ledger(LedgerConfig(), store=store)
        config = RepairConfig(target="indexes", entity_type="item", index_name="collected")

        result = await RepairTool(config, ledger).run()

        assert not result.success
        assert "collected" in result.error

    def test_unknown_target(self):
        with pytest.raises(ValueError):
            RepairTool(RepairConfig(target="everything"), Ledger(LedgerConfig(), store=InMemoryKvStore()))
