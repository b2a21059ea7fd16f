"""
Tests for RowStore: id uniqueness, idempotent applies and render order.
"""

import random

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.models import TaskStatus
from task_board.row_store import RowStore

from conftest import make_task


class TestRowStoreApplies:
    """Insert/update/delete semantics."""

    def test_insert_places_newest_first(self):
        store = RowStore()
        store.apply_insert(make_task("a"))
        store.apply_insert(make_task("b"))
        assert store.ids() == ("b", "a")

    def test_insert_appends_when_oldest_first(self):
        store = RowStore(newest_first=False)
        store.apply_insert(make_task("a"))
        store.apply_insert(make_task("b"))
        assert store.ids() == ("a", "b")

    def test_duplicate_insert_is_noop(self):
        store = RowStore()
        assert store.apply_insert(make_task("a", title="first"))
        assert not store.apply_insert(make_task("a", title="second"))
        assert len(store) == 1
        assert store.get("a").title == "first"

    def test_update_replaces_known_record_in_place(self):
        store = RowStore()
        store.replace_all([make_task("a"), make_task("b"), make_task("c")])
        assert store.apply_update(make_task("b", status=TaskStatus.COMPLETED))
        assert store.ids() == ("a", "b", "c")
        assert store.get("b").status == TaskStatus.COMPLETED

    def test_update_unknown_id_is_noop(self):
        store = RowStore()
        store.apply_insert(make_task("a"))
        version = store.version
        assert not store.apply_update(make_task("ghost"))
        assert "ghost" not in store
        assert store.version == version

    def test_delete_unknown_id_is_noop(self):
        store = RowStore()
        store.apply_insert(make_task("a"))
        assert not store.apply_delete("ghost")
        assert store.ids() == ("a",)

    def test_delete_then_late_update_stays_deleted(self):
        """A re-fetch resolving after the delete must not resurrect the row."""
        store = RowStore()
        store.apply_insert(make_task("a"))
        store.apply_delete("a")
        store.apply_update(make_task("a", status=TaskStatus.IN_PROGRESS))
        assert "a" not in store

    def test_identical_update_does_not_notify(self):
        store = RowStore()
        task = make_task("a")
        store.apply_insert(task)
        calls = []
        store.add_listener(lambda s: calls.append(s.version))
        store.apply_update(task)
        assert calls == []

    def test_replace_all_deduplicates(self):
        store = RowStore()
        store.replace_all([make_task("a", title="old"), make_task("b"), make_task("a", title="new")])
        assert store.ids() == ("a", "b")
        assert store.get("a").title == "new"


class TestRowStoreUniqueIds:
    """Random apply sequences never produce duplicate ids."""

    @pytest.mark.parametrize("seed", range(10))
    def test_ids_stay_unique(self, seed):
        rng = random.Random(seed)
        store = RowStore()
        ids = [f"t{i}" for i in range(6)]
        for _ in range(200):
            op = rng.choice(("insert", "update", "delete"))
            task_id = rng.choice(ids)
            if op == "insert":
                store.apply_insert(make_task(task_id))
            elif op == "update":
                store.apply_update(make_task(task_id, status=rng.choice(list(TaskStatus))))
            else:
                store.apply_delete(task_id)
            assert len(set(store.ids())) == len(store.ids())
            assert {t.id for t in store.snapshot()} == set(store.ids())


class TestRowStoreListeners:

    def test_listener_removal(self):
        store = RowStore()
        calls = []
        remove = store.add_listener(lambda s: calls.append(len(s)))
        store.apply_insert(make_task("a"))
        remove()
        store.apply_insert(make_task("b"))
        assert calls == [1]
