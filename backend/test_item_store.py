"""Tests for SQLite learned item storage."""

import numpy as np
import pytest

from item_store import SQLiteItemStore
from models import LearnedItem


def make_item(name="My Keys", photos=3, dim=8):
    rng = np.random.RandomState(len(name))
    return LearnedItem.create(name, [rng.rand(dim) for _ in range(photos)])


class TestLearnedItem:

    def test_create(self):
        item = make_item(photos=4)
        assert item.photo_count == 4
        assert item.dimension == 8
        assert item.embeddings[0].dtype == np.float32

    def test_requires_embeddings(self):
        with pytest.raises(ValueError):
            LearnedItem.create("wallet", [])

    def test_mixed_dimensions(self):
        with pytest.raises(ValueError):
            LearnedItem.create("wallet", [np.ones(4), np.ones(5)])

    def test_summary_has_no_vectors(self):
        summary = make_item().summary()
        assert set(summary) == {"item_id", "name", "photo_count", "created_at"}


class TestSQLiteItemStore:

    def test_save_and_get(self, item_store):
        item = make_item()
        item_store.save(item)

        loaded = item_store.get(item.item_id)
        assert loaded.name == "My Keys"
        assert loaded.photo_count == 3

    def test_persists_across_instances(self, tmp_path):
        db_path = str(tmp_path / "nested" / "items.db")
        item = make_item()
        SQLiteItemStore(db_path).save(item)

        reloaded = SQLiteItemStore(db_path).get(item.item_id)
        assert reloaded is not None
        assert len(reloaded.embeddings) == 3
        np.testing.assert_array_equal(reloaded.embeddings[1], item.embeddings[1])

    def test_list_in_creation_order(self, item_store):
        first = make_item("wallet")
        second = make_item("glasses")
        second.created_at = first.created_at + 1
        item_store.save(second)
        item_store.save(first)

        assert [i.name for i in item_store.list()] == ["wallet", "glasses"]

    def test_get_by_name_is_case_insensitive(self, item_store):
        item = make_item("My Keys")
        item_store.save(item)

        assert item_store.get_by_name("  my keys ").item_id == item.item_id
        assert item_store.get_by_name("wallet") is None

    def test_delete(self, item_store, tmp_path):
        item = make_item()
        item_store.save(item)

        assert item_store.delete(item.item_id)
        assert item_store.get(item.item_id) is None
        assert SQLiteItemStore(str(tmp_path / "items.db")).list() == []

    def test_delete_unknown(self, item_store):
        assert not item_store.delete("missing")
