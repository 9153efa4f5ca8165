"""Tests for the SQLite entity store."""

import sqlite3
import threading

import pytest

from entity_tracker.lifecycle import new_canonical_id
from entity_tracker.models import Character, Item, Mention
from entity_tracker.storage import SQLiteEntityStore


def _item(name="sword", game_id=1, **kwargs):
    return Item(game_id=game_id, name=name, canonical_id=new_canonical_id(), **kwargs)


def _character(name="Mira", game_id=1, **kwargs):
    return Character(game_id=game_id, name=name, canonical_id=new_canonical_id(), **kwargs)


class TestItems:
    def test_insert_assigns_id(self, tmp_store):
        item = tmp_store.save_item(_item(acquired_at=1, last_mentioned_at=1))
        assert item.id is not None
        loaded = tmp_store.get_item(item.id)
        assert loaded == item

    def test_update_round_trip(self, tmp_store):
        item = tmp_store.save_item(_item(aliases=["blade"]))
        item.current_state = "BROKEN"
        item.state_history.append({"turn": 5, "state": "BROKEN", "context": None, "extra": {}})
        item.lost_at = 5
        tmp_store.save_item(item)
        loaded = tmp_store.get_item(item.id)
        assert loaded.current_state == "BROKEN"
        assert loaded.aliases == ["blade"]
        assert loaded.state_history[0]["turn"] == 5
        assert loaded.lost_at == 5

    def test_lost_at_is_never_cleared(self, tmp_store):
        item = tmp_store.save_item(_item(lost_at=5))
        item.lost_at = None
        tmp_store.save_item(item)
        assert tmp_store.get_item(item.id).lost_at == 5

    def test_history_is_append_only(self, tmp_store):
        item = _item()
        item.state_history.append({"turn": 1, "state": "LOST", "context": None, "extra": {}})
        tmp_store.save_item(item)
        item.state_history = []
        with pytest.raises(ValueError):
            tmp_store.save_item(item)

    def test_list_is_per_game(self, tmp_store):
        tmp_store.save_item(_item("sword", game_id=1))
        tmp_store.save_item(_item("shield", game_id=1))
        tmp_store.save_item(_item("sword", game_id=2))
        assert [i.name for i in tmp_store.list_items(1)] == ["sword", "shield"]
        assert [i.name for i in tmp_store.list_items(2)] == ["sword"]
        assert tmp_store.list_items(3) == []

    def test_get_missing(self, tmp_store):
        assert tmp_store.get_item(999) is None

    def test_update_missing_raises(self, tmp_store):
        with pytest.raises(KeyError):
            tmp_store.save_item(_item(id=999))


class TestCharacters:
    def test_round_trip(self, tmp_store):
        king = tmp_store.save_character(_character("King"))
        beggar = _character(
            "beggar",
            relationship="FRIENDLY",
            importance=7,
            original_character_id=king.id,
            first_appeared_at=2,
            last_appeared_at=2,
        )
        tmp_store.save_character(beggar)
        loaded = tmp_store.get_character(beggar.id)
        assert loaded == beggar
        assert loaded.original_character_id == king.id

    def test_update(self, tmp_store):
        c = tmp_store.save_character(_character())
        c.aliases.append("the healer")
        c.relationship = "HOSTILE"
        c.last_appeared_at = 9
        tmp_store.save_character(c)
        loaded = tmp_store.get_character(c.id)
        assert loaded.aliases == ["the healer"]
        assert loaded.relationship == "HOSTILE"
        assert loaded.last_appeared_at == 9

    def test_list_characters(self, tmp_store):
        tmp_store.save_character(_character("Mira"))
        tmp_store.save_character(_character("Tomas", game_id=2))
        assert [c.name for c in tmp_store.list_characters(1)] == ["Mira"]


class TestMentions:
    def test_add_and_filter(self, tmp_store):
        item = tmp_store.save_item(_item())
        m = tmp_store.add_mention(Mention(
            entity_type="ITEM", entity_id=item.id, segment_id=4,
            state_change=True, new_state="BROKEN", context="it shattered",
        ))
        tmp_store.add_mention(Mention(entity_type="ITEM", entity_id=item.id, segment_id=5))
        assert m.id is not None
        assert len(tmp_store.list_mentions(entity_type="ITEM", entity_id=item.id)) == 2
        found = tmp_store.list_mentions(segment_id=4)
        assert len(found) == 1
        assert found[0].state_change is True
        assert found[0].new_state == "BROKEN"


class TestTransactions:
    def test_commit(self, tmp_store):
        with tmp_store.transaction():
            tmp_store.save_item(_item("sword"))
            tmp_store.save_character(_character("Mira"))
        assert len(tmp_store.list_items(1)) == 1
        assert len(tmp_store.list_characters(1)) == 1

    def test_rollback_on_error(self, tmp_store):
        with pytest.raises(RuntimeError):
            with tmp_store.transaction():
                tmp_store.save_item(_item("sword"))
                tmp_store.save_character(_character("Mira"))
                raise RuntimeError("boom")
        assert tmp_store.list_items(1) == []
        assert tmp_store.list_characters(1) == []

    def test_nested_joins_outer(self, tmp_store):
        with pytest.raises(RuntimeError):
            with tmp_store.transaction():
                with tmp_store.transaction():
                    tmp_store.save_item(_item("sword"))
                raise RuntimeError("boom")
        assert tmp_store.list_items(1) == []

    def test_persisted_across_connections(self, tmp_store):
        tmp_store.save_item(_item("sword"))
        other = SQLiteEntityStore(db_path=tmp_store.db_path)
        try:
            assert [i.name for i in other.list_items(1)] == ["sword"]
        finally:
            other.close()

    def test_canonical_id_unique(self, tmp_store):
        item = tmp_store.save_item(_item())
        clone = Item(game_id=1, name="other", canonical_id=item.canonical_id)
        with pytest.raises(sqlite3.IntegrityError):
            tmp_store.save_item(clone)

    def test_open_transaction_does_not_block_other_threads(self, tmp_store):
        seen = []

        def read_other_game():
            seen.append(tmp_store.list_items(2))

        with tmp_store.transaction():
            tmp_store.save_item(_item("sword", game_id=1))
            t = threading.Thread(target=read_other_game)
            t.start()
            t.join(timeout=2.0)
            assert not t.is_alive()
        assert seen == [[]]
        assert [i.name for i in tmp_store.list_items(1)] == ["sword"]

    def test_uncommitted_writes_invisible_to_other_threads(self, tmp_store):
        seen = []

        def read_same_game():
            seen.append([i.name for i in tmp_store.list_items(1)])

        with tmp_store.transaction():
            tmp_store.save_item(_item("sword"))
            t = threading.Thread(target=read_same_game)
            t.start()
            t.join(timeout=2.0)
        assert seen == [[]]

    def test_memory_database_shared_across_threads(self):
        store = SQLiteEntityStore(db_path=":memory:")
        try:
            store.save_item(_item("sword"))
            seen = []
            t = threading.Thread(target=lambda: seen.append(len(store.list_items(1))))
            t.start()
            t.join(timeout=2.0)
            assert seen == [1]
        finally:
            store.close()


class TestStats:
    def test_counts(self, tmp_store):
        item = tmp_store.save_item(_item(lost_at=3))
        tmp_store.save_item(_item("key"))
        tmp_store.save_character(_character())
        tmp_store.save_item(_item("bow", game_id=2))
        tmp_store.add_mention(Mention(entity_type="ITEM", entity_id=item.id, segment_id=1))

        stats = tmp_store.stats(1)
        assert stats["items"] == 2
        assert stats["characters"] == 1
        assert stats["mentions"] == 1
        assert stats["lost_items"] == 1
        assert tmp_store.stats()["items"] == 3
