#!/usr/bin/env python3
"""Replay a JSONL file of generated segments into an entity database.

Each line is one segment::

    {"id": 7, "turn": 5, "content": "The sword shattered ...",
     "newItems": [{"name": "...", "description": "..."}],
     "newCharacters": [{"name": "...", "description": "...", "relationship": "..."}]}

``turn`` defaults to the line number; ``newItems`` / ``newCharacters`` are
optional generator claims applied after the narrative text.

Usage:
    python scripts/replay_segments.py segments.jsonl --game-id 1 [--db PATH]
    python scripts/replay_segments.py segments.jsonl --no-spacy   # regex extraction only
    python scripts/replay_segments.py segments.jsonl --metrics    # print Prometheus counters
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from entity_tracker.config import load_config
from entity_tracker.metrics import render_prometheus_metrics
from entity_tracker.processor import SegmentProcessor
from entity_tracker.schemas import GeneratorClaims, Segment
from entity_tracker.storage import SQLiteEntityStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay segments into the entity tracker")
    parser.add_argument("segments", help="JSONL file, one segment per line")
    parser.add_argument("--game-id", type=int, default=1, help="Game to replay into")
    parser.add_argument("--db", help="Override database path")
    parser.add_argument("--config", help="Optional config.json")
    parser.add_argument("--no-spacy", action="store_true", help="Force regex extraction")
    parser.add_argument("--metrics", action="store_true", help="Print metrics after the replay")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger = logging.getLogger("replay_segments")

    cfg = load_config(args.config)
    if args.db:
        cfg.db_path = args.db
    if args.no_spacy:
        cfg.use_spacy = False
    errors = cfg.validate()
    if errors:
        for err in errors:
            logger.error("config: %s", err)
        return 2

    path = Path(args.segments)
    if not path.is_file():
        print(f"No such file: {path}")
        return 1

    store = SQLiteEntityStore(db_path=cfg.db_path)
    processor = SegmentProcessor(store, config=cfg)

    print("=" * 60)
    print("  Entity Tracker — Segment Replay")
    print("=" * 60)
    print(f"  Segments:  {path}")
    print(f"  Database:  {cfg.db_path}")
    print(f"  Game:      {args.game_id}")
    print(f"  Extractor: {processor.extractor.name}")
    print("=" * 60)
    print()

    processed = 0
    failed = 0
    with open(path, "r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
                segment = Segment.model_validate(record)
                claims = GeneratorClaims.model_validate(record)
            except ValueError as exc:
                failed += 1
                logger.warning("line %d: invalid segment: %s", lineno, exc)
                continue

            turn = int(record.get("turn", lineno))
            result = processor.process_segment(args.game_id, segment, turn)
            gen = processor.process_generator_output(
                args.game_id, claims.new_items, claims.new_characters, turn,
            )
            processed += 1
            for entry in result.processed_items + gen.processed_items:
                change = f" -> {entry['state_change']}" if entry["state_change"] else ""
                print(f"  turn {turn:>3}  item       {entry['action']:<8} {entry['name']}{change}")
            for entry in result.processed_characters + gen.processed_characters:
                reveal = f" = {entry['identity']}" if entry["identity"] else ""
                print(f"  turn {turn:>3}  character  {entry['action']:<8} {entry['name']}{reveal}")

    print()
    print(f"  Replayed {processed} segments ({failed} skipped)")
    print()
    print("  Roster:")
    for item in store.list_items(args.game_id):
        lost = f", lost at turn {item.lost_at}" if item.lost_at is not None else ""
        print(f"    [item {item.id}] {item.name} ({item.current_state}{lost})")
    for character in store.list_characters(args.game_id):
        parts = []
        if character.aliases:
            parts.append("aka " + ", ".join(character.aliases))
        if character.original_character_id is not None:
            parts.append(f"is #{character.original_character_id}")
        suffix = f" ({'; '.join(parts)})" if parts else ""
        print(f"    [character {character.id}] {character.name}{suffix}")

    stats = store.stats(args.game_id)
    print(f"\n  Database: {stats['items']} items, {stats['characters']} characters, {stats['mentions']} mentions")

    if args.metrics:
        print()
        print(render_prometheus_metrics(), end="")

    store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
