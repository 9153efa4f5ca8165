"""Tests for segment and generator-claim processing."""

import sqlite3

import pytest

from entity_tracker.extraction import RegexExtractor, SpacyExtractor
from entity_tracker.processor import SegmentProcessor
from entity_tracker.schemas import Segment


class _CountingExtractor(RegexExtractor):
    def __init__(self):
        self.calls = 0

    def extract(self, text):
        self.calls += 1
        return super().extract(text)


# ---------------------------------------------------------------------------
# Narrative segments
# ---------------------------------------------------------------------------

class TestProcessSegment:
    def test_new_item_created(self, processor, tmp_store, sample_segments):
        result = processor.process_segment(1, sample_segments[0], 1)

        assert [e["name"] for e in result.processed_items] == ["sword"]
        assert result.processed_items[0]["action"] == "CREATED"
        assert result.processed_characters == []
        assert result.extracted_entities["items"] == ["sword"]

        items = tmp_store.list_items(1)
        assert len(items) == 1
        assert items[0].current_state == "DEFAULT"
        assert items[0].acquired_at == 1
        assert items[0].lost_at is None

    def test_state_change_on_existing_item(self, processor, tmp_store, sample_segments):
        processor.process_segment(1, sample_segments[0], 1)
        before = tmp_store.list_items(1)[0]

        result = processor.process_segment(1, sample_segments[1], 5)

        entry = result.processed_items[0]
        assert entry["action"] == "UPDATED"
        assert entry["id"] == before.id
        assert entry["state_change"] == "BROKEN"

        items = tmp_store.list_items(1)
        assert len(items) == 1
        assert items[0].current_state == "BROKEN"
        assert items[0].lost_at == 5
        assert items[0].last_mentioned_at == 5
        assert len(items[0].state_history) == len(before.state_history) + 1

    def test_item_introduced_already_broken(self, processor, tmp_store, sample_segments):
        processor.process_segment(1, sample_segments[1], 2)
        item = tmp_store.list_items(1)[0]
        assert item.current_state == "BROKEN"
        assert item.lost_at == 2
        assert [h["state"] for h in item.state_history] == ["BROKEN"]

    def test_identity_with_unknown_target(self, processor, tmp_store, sample_segments):
        result = processor.process_segment(1, sample_segments[2], 4)

        characters = tmp_store.list_characters(1)
        assert [c.name for c in characters] == ["beggar"]
        beggar = characters[0]
        assert beggar.aliases == ["King"]
        assert beggar.original_character_id is None
        assert len(beggar.state_history) == 1
        assert beggar.state_history[0]["type"] == "IDENTITY_REVEALED"
        assert beggar.state_history[0]["newIdentity"] == "King"

        # "king" resolves to the beggar through the alias, not a new record
        assert [e["name"] for e in result.processed_characters] == ["beggar"]
        assert result.processed_characters[0]["identity"] == "King"
        assert tmp_store.list_items(1) == []

    def test_identity_with_known_target(self, processor, tmp_store, sample_segments):
        processor.process_generator_output(1, [], [{"name": "King"}], 1)
        king = tmp_store.list_characters(1)[0]

        result = processor.process_segment(1, sample_segments[2], 4)

        beggar = next(c for c in tmp_store.list_characters(1) if c.name == "beggar")
        assert beggar.original_character_id == king.id
        assert beggar.aliases == []
        actions = {e["name"]: e["action"] for e in result.processed_characters}
        assert actions == {"beggar": "CREATED", "King": "UPDATED"}

    def test_identity_on_existing_character(self, processor, tmp_store, sample_segments):
        processor.process_generator_output(1, [], [{"name": "beggar"}], 1)
        processor.process_segment(1, sample_segments[2], 4)
        processor.process_segment(1, sample_segments[2], 6)

        characters = tmp_store.list_characters(1)
        assert len(characters) == 1
        assert characters[0].aliases == ["King"]
        assert len(characters[0].state_history) == 2
        assert characters[0].last_appeared_at == 6

    def test_one_mention_per_resolved_entity(self, processor, tmp_store, sample_segments):
        processor.process_segment(1, sample_segments[0], 1)
        processor.process_segment(1, sample_segments[1], 5)
        processor.process_segment(1, sample_segments[2], 6)

        item = tmp_store.list_items(1)[0]
        mentions = tmp_store.list_mentions(entity_type="ITEM", entity_id=item.id)
        assert [m.segment_id for m in mentions] == [1, 2]
        assert [m.state_change for m in mentions] == [False, True]
        assert mentions[1].new_state == "BROKEN"

        beggar = tmp_store.list_characters(1)[0]
        beggar_mentions = tmp_store.list_mentions(entity_type="CHARACTER", entity_id=beggar.id)
        assert len(beggar_mentions) == 1
        assert beggar_mentions[0].state_change is True
        assert beggar_mentions[0].new_state == "IDENTITY_REVEALED"

    def test_generic_terms_never_become_entities(self, processor, tmp_store):
        for turn in range(1, 4):
            processor.process_segment(
                1, {"id": turn, "content": "The thing glowed. Someone laughed."}, turn
            )
        assert tmp_store.list_items(1) == []
        assert tmp_store.list_characters(1) == []

    def test_empty_segment_is_noop(self, processor, tmp_store):
        result = processor.process_segment(1, {"id": 1, "content": ""}, 1)
        assert result.processed_items == []
        assert result.processed_characters == []
        assert tmp_store.stats(1)["mentions"] == 0

    def test_segment_without_content_is_noop(self, processor, tmp_store):
        result = processor.process_segment(1, {"id": 1, "content": None}, 1)
        assert result.processed_items == []
        assert result.processed_characters == []
        assert tmp_store.stats(1)["mentions"] == 0
        assert Segment(id=2, content=None).content == ""

    def test_every_state_change_applied_in_text_order(self, processor, tmp_store):
        processor.process_generator_output(1, [{"name": "amulet"}], [], 1)
        segment = {"id": 1, "content": "Mira lost the amulet. Hours later Tomas found the amulet."}

        result = processor.process_segment(1, segment, 4)

        item = tmp_store.list_items(1)[0]
        assert item.current_state == "FOUND"
        assert item.lost_at == 4
        assert [h["state"] for h in item.state_history] == ["LOST", "FOUND"]
        entry = next(e for e in result.processed_items if e["id"] == item.id)
        assert entry["state_change"] == "FOUND"

        mentions = tmp_store.list_mentions(entity_type="ITEM", entity_id=item.id)
        assert len(mentions) == 1
        assert mentions[0].state_change is True
        assert mentions[0].new_state == "FOUND"

    def test_new_item_takes_every_state_change(self, processor, tmp_store):
        segment = {"id": 1, "content": "Mira lost the amulet. Hours later Tomas found the amulet."}
        processor.process_segment(1, segment, 2)

        item = tmp_store.list_items(1)[0]
        assert item.name == "amulet"
        assert item.current_state == "FOUND"
        assert item.lost_at == 2
        assert [h["state"] for h in item.state_history] == ["LOST", "FOUND"]

    def test_accepts_segment_model_and_string_game_id(self, processor, tmp_store):
        processor.process_segment("7", Segment(id=1, content="Mira waited by the gate."), 1)
        assert [c.name for c in tmp_store.list_characters(7)] == ["mira"]

    def test_games_are_isolated(self, processor, tmp_store, sample_segments):
        processor.process_segment(1, sample_segments[0], 1)
        processor.process_segment(2, sample_segments[1], 1)
        assert tmp_store.list_items(1)[0].current_state == "DEFAULT"
        assert tmp_store.list_items(2)[0].current_state == "BROKEN"

    @pytest.mark.parametrize("game_id", ["abc", 0, -3, None, 1.5, True])
    def test_invalid_game_id_rejected_before_extraction(self, tmp_store, config, game_id):
        extractor = _CountingExtractor()
        proc = SegmentProcessor(tmp_store, extractor=extractor, config=config)
        with pytest.raises(ValueError):
            proc.process_segment(game_id, {"id": 1, "content": "The sword fell."}, 1)
        assert extractor.calls == 0

    def test_invalid_turn_rejected(self, processor):
        with pytest.raises(ValueError):
            processor.process_segment(1, {"id": 1, "content": "x"}, -1)

    def test_failed_write_leaves_roster_untouched(
        self, processor, tmp_store, sample_segments, monkeypatch
    ):
        processor.process_segment(1, sample_segments[0], 1)

        def boom(mention):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(tmp_store, "add_mention", boom)
        with pytest.raises(sqlite3.OperationalError):
            processor.process_segment(1, sample_segments[1], 5)
        monkeypatch.undo()

        item = tmp_store.list_items(1)[0]
        assert item.current_state == "DEFAULT"
        assert item.state_history == []
        assert item.lost_at is None

        # retrying the whole segment succeeds
        processor.process_segment(1, sample_segments[1], 5)
        assert tmp_store.list_items(1)[0].current_state == "BROKEN"

    def test_metrics_recorded(self, processor, metrics, sample_segments):
        processor.process_segment(1, sample_segments[0], 1)
        processor.process_segment(1, sample_segments[1], 5)
        snap = metrics.snapshot()
        assert snap["segments_total"][("narrative", "regex")] == 2
        assert snap["entities_total"][("ITEM", "CREATED")] == 1
        assert snap["entities_total"][("ITEM", "UPDATED")] == 1

    def test_with_spacy_strategy(self, tmp_store, config, blank_nlp):
        proc = SegmentProcessor(tmp_store, extractor=SpacyExtractor(blank_nlp), config=config)
        result = proc.process_segment(1, {"id": 1, "content": "The beggar was actually revealed as the King."}, 3)
        assert result.extracted_entities["strategy"] == "spacy"
        characters = tmp_store.list_characters(1)
        assert [c.name for c in characters] == ["beggar"]
        assert characters[0].aliases == ["King"]


# ---------------------------------------------------------------------------
# Generator claims
# ---------------------------------------------------------------------------

class TestProcessGeneratorOutput:
    def test_item_created_in_declared_state(self, processor, tmp_store):
        result = processor.process_generator_output(
            1,
            [{"name": "Health Potion", "description": "ITEM_UPDATE: Health Potion | CONSUMED | drank it all"}],
            [],
            3,
        )
        item = tmp_store.list_items(1)[0]
        assert item.name == "Health Potion"
        assert item.current_state == "CONSUMED"
        assert item.lost_at == 3
        assert [h["state"] for h in item.state_history] == ["CONSUMED"]
        assert item.state_history[0]["extra"]["explicit"] is True
        assert result.processed_items[0]["action"] == "CREATED"

    def test_state_applied_to_existing_item(self, processor, tmp_store):
        processor.process_generator_output(1, [{"name": "Lantern"}], [], 1)
        processor.process_generator_output(
            1, [{"name": "lantern", "description": "ITEM_UPDATE: lantern | LOST | fell in the river"}], [], 4
        )
        items = tmp_store.list_items(1)
        assert len(items) == 1
        assert items[0].current_state == "LOST"
        assert items[0].lost_at == 4

    def test_repeated_claim_in_one_call_applies_update(self, processor, tmp_store):
        result = processor.process_generator_output(
            1,
            [
                {"name": "Lantern"},
                {"name": "Lantern", "description": "ITEM_UPDATE: Lantern | LOST | dropped it"},
            ],
            [],
            2,
        )
        items = tmp_store.list_items(1)
        assert len(items) == 1
        assert items[0].current_state == "LOST"
        assert items[0].lost_at == 2
        assert [e["action"] for e in result.processed_items] == ["CREATED", "UPDATED"]
        assert result.processed_items[1]["state_change"] == "LOST"

    def test_longer_description_replaces(self, processor, tmp_store):
        processor.process_generator_output(1, [{"name": "Lantern", "description": "A lantern"}], [], 1)
        processor.process_generator_output(
            1, [{"name": "Lantern", "description": "A brass lantern hanging from a hook"}], [], 2
        )
        processor.process_generator_output(1, [{"name": "Lantern", "description": "Lamp"}], [], 3)
        item = tmp_store.list_items(1)[0]
        assert item.description == "A brass lantern hanging from a hook"
        assert item.current_state == "DEFAULT"

    def test_character_marker_and_relationship(self, processor, tmp_store):
        processor.process_generator_output(
            1,
            [],
            [{
                "name": "Hooded Stranger",
                "description": "CHARACTER_UPDATE: Hooded Stranger | Queen Elara | removed her hood",
                "relationship": "friendly",
            }],
            6,
        )
        stranger = tmp_store.list_characters(1)[0]
        assert stranger.aliases == ["Queen Elara"]
        assert stranger.relationship == "FRIENDLY"
        assert stranger.state_history[0]["newIdentity"] == "Queen Elara"
        assert stranger.state_history[0]["context"] == "removed her hood"

    def test_relationship_label_updated(self, processor, tmp_store):
        processor.process_generator_output(1, [], [{"name": "Mira", "relationship": "friendly"}], 1)
        processor.process_generator_output(1, [], [{"name": "Mira", "relationship": "hostile"}], 2)
        processor.process_generator_output(1, [], [{"name": "Mira"}], 3)
        mira = tmp_store.list_characters(1)[0]
        assert mira.relationship == "HOSTILE"
        assert mira.last_appeared_at == 3

    def test_identity_links_to_known_character(self, processor, tmp_store):
        processor.process_generator_output(1, [], [{"name": "Queen Elara"}], 1)
        processor.process_generator_output(
            1, [], [{"name": "Hooded Stranger", "description": "She is actually the Queen Elara."}], 2
        )
        queen, stranger = tmp_store.list_characters(1)
        assert stranger.original_character_id == queen.id
        assert stranger.aliases == []

    def test_generic_claims_skipped(self, processor, tmp_store):
        result = processor.process_generator_output(1, [{"name": "thing"}], [{"name": "someone"}], 1)
        assert result.processed_items == []
        assert result.processed_characters == []
        assert tmp_store.stats(1)["items"] == 0

    def test_zero_candidates(self, processor):
        result = processor.process_generator_output(1, [], None, 1)
        assert result.processed_items == []
        assert result.processed_characters == []

    def test_invalid_claim_rejected(self, processor, tmp_store):
        with pytest.raises(ValueError):
            processor.process_generator_output(1, [{"name": ""}], [], 1)
        assert tmp_store.list_items(1) == []

    def test_no_mentions_recorded(self, processor, tmp_store):
        processor.process_generator_output(1, [{"name": "Lantern"}], [{"name": "Mira"}], 1)
        assert tmp_store.list_mentions() == []
