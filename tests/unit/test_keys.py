"""
Unit tests for the key builder.

Tests cover:
- Key layout of every key family
- Set key classification
- Month tokens in UTC
- Effect keys independent of time
"""

from datetime import datetime, timedelta, timezone

import pytest

from kvledger import keys
from kvledger.keys import EffectKey
from kvledger.types import EntityType


class TestKeyLayout:
    """Tests for key builders."""

    def test_data_and_all_ids_keys(self):
        assert keys.data_key(EntityType.TASK, "task-1") == "data:task:task-1"
        assert keys.data_key("financial", "fin-1") == "data:financial:fin-1"
        assert keys.all_ids_key(EntityType.ITEM) == "index:item"

    def test_collection_names_are_accepted(self):
        """Collection names resolve to the same entity type."""
        assert keys.data_key("tasks", "task-1") == keys.data_key("task", "task-1")

    def test_index_key_uses_collection(self):
        assert keys.index_key(EntityType.TASK, "collected", "01-24") == "index:tasks:collected:01-24"
        assert keys.index_prefix(EntityType.ITEM, "sold") == "index:items:sold:"

    def test_link_keys(self):
        assert keys.link_key("abc") == "links:link:abc"
        assert keys.links_by_entity_key(EntityType.TASK, "task-1") == "index:links:by-entity:task:task-1"

    def test_parse_links_by_entity_key(self):
        key = keys.links_by_entity_key(EntityType.CHARACTER, "char:with:colons")
        assert keys.parse_links_by_entity_key(key) == (EntityType.CHARACTER, "char:with:colons")

    def test_log_keys(self):
        assert keys.log_key(EntityType.SALE) == "logs:sale"
        assert keys.log_key("links") == "logs:links"

    def test_archive_keys(self):
        assert keys.archive_data_key("task-snapshots", "02-24", "task-1") == "archive:task-snapshots:02-24:task-1"
        assert keys.archive_index_key("task-snapshots", "02-24") == "index:archive:task-snapshots:02-24"
        assert keys.archive_months_key() == "index:archive:months"

    def test_unknown_entity_type_rejected(self):
        with pytest.raises(ValueError):
            keys.data_key("spaceship", "x")


class TestSetKeys:
    """Only index keys hold sets."""

    def test_index_keys_are_sets(self):
        assert keys.is_set_key(keys.all_ids_key(EntityType.TASK))
        assert keys.is_set_key(keys.index_key(EntityType.TASK, "collected", "01-24"))
        assert keys.is_set_key(keys.links_by_entity_key(EntityType.TASK, "t"))
        assert keys.is_set_key(keys.archive_months_key())

    def test_other_keys_are_values(self):
        assert not keys.is_set_key(keys.data_key(EntityType.TASK, "t"))
        assert not keys.is_set_key(keys.link_key("l"))
        assert not keys.is_set_key(keys.log_key("links"))
        assert not keys.is_set_key(EffectKey.created(EntityType.TASK, "t"))


class TestMonthToken:
    """Tests for month_token()."""

    def test_format(self):
        assert keys.month_token(datetime(2024, 1, 15, tzinfo=timezone.utc)) == "01-24"
        assert keys.month_token(datetime(2009, 12, 1, tzinfo=timezone.utc)) == "12-09"

    def test_converts_to_utc(self):
        """A local time just past midnight on the 1st belongs to the previous UTC month."""
        plus_two = timezone(timedelta(hours=2))
        assert keys.month_token(datetime(2024, 3, 1, 1, 0, tzinfo=plus_two)) == "02-24"

    def test_naive_is_utc(self):
        assert keys.month_token(datetime(2024, 3, 1, 0, 30)) == "03-24"


class TestEffectKey:
    """Tests for EffectKey builders."""

    def test_created(self):
        assert EffectKey.created("task", "task-1") == "effects:task:task-1:created"

    def test_status(self):
        key = EffectKey.status(EntityType.TASK, "task-1", "Done", "Collected")
        assert key == "effects:task:task-1:status:Done->Collected"

    def test_status_with_bucket(self):
        key = EffectKey.status(EntityType.TASK, "task-1", "Done", "Collected", "02-24")
        assert key == "effects:task:task-1:status:Done->Collected:02-24"

    def test_monthly_and_side_effect(self):
        assert EffectKey.monthly("item", "item-1", "archived", "05-24") == "effects:item:item-1:archived:05-24"
        assert EffectKey.side_effect("sale", "sale-1", "points") == "effects:sale:sale-1:points"

    def test_stable_across_calls(self):
        """Same logical operation, same key."""
        assert EffectKey.created("task", "t") == EffectKey.created(EntityType.TASK, "t")
