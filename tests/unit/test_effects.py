"""
Unit tests for the effect ledger.
"""

import pytest

from kvledger.apply import EffectLedger
from kvledger.keys import EffectKey
from kvledger.store import StoreUnavailableError


class TestEffectLedger:
    """Tests for EffectLedger."""

    @pytest.fixture
    def effects(self, store):
        return EffectLedger(store)

    @pytest.mark.asyncio
    async def test_mark_and_clear(self, effects):
        key = EffectKey.created("task", "task-1")
        assert not await effects.has_effect(key)

        await effects.mark_effect(key)
        assert await effects.has_effect(key)

        await effects.clear_effect(key)
        assert not await effects.has_effect(key)

    @pytest.mark.asyncio
    async def test_run_once_runs_exactly_once(self, effects):
        calls = []

        async def action():
            calls.append(1)

        key = EffectKey.side_effect("task", "task-1", "points")
        assert await effects.run_once(key, action) is True
        assert await effects.run_once(key, action) is False
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_failed_action_leaves_no_marker(self, effects):
        """Mark-after-do: a failed action can be retried."""
        key = EffectKey.created("item", "item-1")

        async def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await effects.run_once(key, failing)
        assert not await effects.has_effect(key)

    @pytest.mark.asyncio
    async def test_marker_write_failure_propagates(self, store, effects):
        """The action ran, the marker did not land; the error surfaces."""
        calls = []

        async def action():
            calls.append(1)

        store.fail_on("set", "effects:")
        with pytest.raises(StoreUnavailableError):
            await effects.run_once(EffectKey.created("sale", "s1"), action)
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_clear_by_prefix(self, effects):
        await effects.mark_effect(EffectKey.created("task", "task-1"))
        await effects.mark_effect(EffectKey.status("task", "task-1", "Done", "Collected"))
        await effects.mark_effect(EffectKey.status("task", "task-1", "Created", "Done"))
        await effects.mark_effect(EffectKey.created("task", "task-10"))

        assert await effects.clear_effects_by_prefix("task", "task-1", "status:") == 2
        assert await effects.has_effect(EffectKey.created("task", "task-1"))

        assert await effects.clear_effects_by_prefix("task", "task-1") == 1
        # task-10 shares the id prefix but not the key prefix
        assert await effects.has_effect(EffectKey.created("task", "task-10"))
