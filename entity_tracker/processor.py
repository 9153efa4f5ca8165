"""Segment processing: extracted mentions and generator claims to roster updates.

One call handles one segment of one game:

1. Validate the game id, segment and turn (before any extraction work)
2. Extract mentions and relationships once, outside the game lock
3. Under the game lock and a single store transaction, load the roster,
   resolve every candidate (match, update or create) and record mentions

A failure in step 3 rolls the whole segment back; callers retry the segment.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import Config, load_config
from .extraction import ExtractionStrategy, get_extractor
from .lifecycle import EntityLifecycle
from .markers import parse_character_update, parse_item_update
from .matcher import match_entity, names_match
from .metrics import TrackerMetrics, collector
from .models import (
    CHARACTER,
    IDENTITY,
    IDENTITY_REVEALED,
    ITEM,
    STATE_CHANGE,
    Character,
    ExtractionResult,
    GameEntity,
    Item,
    Mention,
    Relationship,
)
from .pool import GameLockPool
from .schemas import DeclaredCharacter, DeclaredItem, Segment
from .storage import EntityStore
from .text import normalize_name

logger = logging.getLogger(__name__)

CREATED = "CREATED"
UPDATED = "UPDATED"

_CONTEXT_RADIUS = 80


@dataclass
class SegmentResult:
    processed_items: List[Dict[str, Any]] = field(default_factory=list)
    processed_characters: List[Dict[str, Any]] = field(default_factory=list)
    extracted_entities: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GeneratorResult:
    processed_items: List[Dict[str, Any]] = field(default_factory=list)
    processed_characters: List[Dict[str, Any]] = field(default_factory=list)


class SegmentProcessor:
    """Keeps one game's item and character roster in step with the story."""

    def __init__(
        self,
        store: EntityStore,
        extractor: Optional[ExtractionStrategy] = None,
        lifecycle: Optional[EntityLifecycle] = None,
        config: Optional[Config] = None,
        locks: Optional[GameLockPool] = None,
        metrics: Optional[TrackerMetrics] = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store
        self.metrics = metrics or collector
        self.extractor = extractor or get_extractor(self.config, self.metrics)
        self.lifecycle = lifecycle or EntityLifecycle.from_config(self.config)
        self.locks = locks or GameLockPool()
        self.threshold = self.config.match_threshold

    # ------------------------------------------------------------------
    # Narrative segments
    # ------------------------------------------------------------------

    def process_segment(self, game_id: Any, segment: Any, turn_count: int) -> SegmentResult:
        """Resolve every mention in *segment* against the game's roster."""
        start = time.monotonic()
        gid = self.locks.normalize_game_id(game_id)
        seg = segment if isinstance(segment, Segment) else Segment.model_validate(segment)
        turn = _validate_turn(turn_count)

        extraction = self.extractor.extract(seg.content)
        item_candidates, character_candidates = self._candidates(extraction)
        result = SegmentResult(extracted_entities=extraction.to_dict())

        if not item_candidates and not character_candidates:
            logger.debug("game %s segment %s: no candidates", gid, seg.id)
            self.metrics.record_segment("narrative", extraction.strategy, time.monotonic() - start)
            return result

        state_rels = [r for r in extraction.relationships if r.type == STATE_CHANGE]
        identity_rels = [r for r in extraction.relationships if r.type == IDENTITY]

        with self.locks.lock(gid), self.store.transaction():
            items = self.store.list_items(gid)
            characters = self.store.list_characters(gid)

            seen: set[int] = set()
            for name in item_candidates:
                rels = _matching(state_rels, name, self.threshold)
                entry = self._resolve_item(gid, seg, turn, name, rels, items, seen)
                if entry:
                    result.processed_items.append(entry)

            seen = set()
            for name in character_candidates:
                rels = _matching(identity_rels, name, self.threshold)
                entry = self._resolve_character(gid, seg, turn, name, rels, characters, seen)
                if entry:
                    result.processed_characters.append(entry)

        logger.info(
            "game %s segment %s (turn %s, %s): %d items, %d characters",
            gid, seg.id, turn, extraction.strategy,
            len(result.processed_items), len(result.processed_characters),
        )
        self.metrics.record_segment("narrative", extraction.strategy, time.monotonic() - start)
        return result

    def _candidates(self, extraction: ExtractionResult) -> Tuple[List[str], List[str]]:
        """Ordered, deduplicated candidate names for each roster.

        Relationship sources come first so an entity introduced together
        with its state change or reveal is created with it. Every
        relationship naming a candidate is later applied, in text order.
        """
        character_keys = set(extraction.characters)

        items: List[str] = []
        for rel in extraction.relationships:
            if rel.type == STATE_CHANGE:
                key = normalize_name(rel.source)
                if key not in character_keys:
                    items.append(key)
        items.extend(extraction.items)

        characters: List[str] = [
            normalize_name(rel.source)
            for rel in extraction.relationships
            if rel.type == IDENTITY
        ]
        characters.extend(extraction.characters)

        return _dedupe(items), _dedupe(characters)

    def _resolve_item(
        self,
        game_id: int,
        seg: Segment,
        turn: int,
        name: str,
        rels: List[Relationship],
        roster: List[Item],
        seen: set[int],
    ) -> Optional[Dict[str, Any]]:
        if self.lifecycle.is_generic(ITEM, name):
            logger.debug("skipping generic item mention %r", name)
            return None

        extra = {"segment_id": seg.id}
        context = rels[-1].context if rels else _context_for(seg.content, name)
        item = match_entity(name, roster, self.threshold)

        if item is not None:
            if item.id in seen:
                return None
            applied = self._apply_states(item, rels, turn, extra)
            self.lifecycle.mark_mentioned(item, turn)
            action = UPDATED
        else:
            first = rels[0] if rels else None
            item = self.lifecycle.create_item(
                game_id, name, turn,
                state=first.new_state if first else None,
                context=first.context if first else context,
                extra=extra,
            )
            applied = bool(item.state_history)
            applied = self._apply_states(item, rels[1:], turn, extra) or applied
            action = CREATED
            roster.append(item)

        self.store.save_item(item)
        seen.add(item.id)
        self.store.add_mention(Mention(
            entity_type=ITEM,
            entity_id=item.id,
            segment_id=seg.id,
            state_change=applied,
            new_state=item.current_state if applied else None,
            context=context,
        ))
        self._log_action(ITEM, action, item)
        return _item_entry(item, action, name, applied)

    def _resolve_character(
        self,
        game_id: int,
        seg: Segment,
        turn: int,
        name: str,
        rels: List[Relationship],
        roster: List[Character],
        seen: set[int],
    ) -> Optional[Dict[str, Any]]:
        if self.lifecycle.is_generic(CHARACTER, name):
            logger.debug("skipping generic character mention %r", name)
            return None

        extra = {"segment_id": seg.id}
        context = rels[-1].context if rels else _context_for(seg.content, name)
        character = match_entity(name, roster, self.threshold)

        if character is not None:
            if character.id in seen:
                return None
            revealed = self._apply_identities(character, rels, turn, roster, extra)
            self.lifecycle.mark_mentioned(character, turn)
            action = UPDATED
        else:
            first = rels[0] if rels else None
            character = self.lifecycle.create_character(
                game_id, name, turn,
                reveal_target=first.target if first else None,
                roster=roster,
                context=first.context if first else context,
                extra=extra,
            )
            revealed = first.target if character.state_history else None
            revealed = self._apply_identities(character, rels[1:], turn, roster, extra) or revealed
            action = CREATED
            roster.append(character)

        self.store.save_character(character)
        seen.add(character.id)
        self.store.add_mention(Mention(
            entity_type=CHARACTER,
            entity_id=character.id,
            segment_id=seg.id,
            state_change=revealed is not None,
            new_state=IDENTITY_REVEALED if revealed is not None else None,
            context=context,
        ))
        self._log_action(CHARACTER, action, character)
        return _character_entry(character, action, name, revealed)

    def _apply_states(
        self, item: Item, rels: Sequence[Relationship], turn: int, extra: Dict[str, Any]
    ) -> bool:
        """Apply each state change in order; True when any was recorded."""
        applied = False
        for rel in rels:
            if self.lifecycle.apply_state_change(
                item, rel.new_state, turn, context=rel.context, extra=extra,
            ):
                applied = True
        return applied

    def _apply_identities(
        self,
        character: Character,
        rels: Sequence[Relationship],
        turn: int,
        roster: List[Character],
        extra: Dict[str, Any],
    ) -> Optional[str]:
        """Apply each reveal in order; returns the last target recorded."""
        revealed = None
        for rel in rels:
            if self.lifecycle.apply_identity(
                character, rel.target, turn, roster=roster, context=rel.context, extra=extra,
            ):
                revealed = rel.target
        return revealed

    # ------------------------------------------------------------------
    # Generator claims
    # ------------------------------------------------------------------

    def process_generator_output(
        self,
        game_id: Any,
        declared_items: Optional[Iterable[Any]],
        declared_characters: Optional[Iterable[Any]],
        turn_count: int,
    ) -> GeneratorResult:
        """Apply the generator's ``newItems`` / ``newCharacters`` claims.

        Descriptions are scanned for ``ITEM_UPDATE`` / ``CHARACTER_UPDATE``
        markers first, then for state and identity keywords. Claims apply in
        order, so a name repeated within one call updates the entity its
        earlier claim created.
        """
        start = time.monotonic()
        gid = self.locks.normalize_game_id(game_id)
        turn = _validate_turn(turn_count)
        items = [_coerce(DeclaredItem, d) for d in declared_items or ()]
        characters = [_coerce(DeclaredCharacter, d) for d in declared_characters or ()]

        result = GeneratorResult()
        if not items and not characters:
            return result

        with self.locks.lock(gid), self.store.transaction():
            item_roster = self.store.list_items(gid)
            character_roster = self.store.list_characters(gid)

            for declared in items:
                entry = self._apply_declared_item(gid, turn, declared, item_roster)
                if entry:
                    result.processed_items.append(entry)

            for declared in characters:
                entry = self._apply_declared_character(gid, turn, declared, character_roster)
                if entry:
                    result.processed_characters.append(entry)

        logger.info(
            "game %s generator claims (turn %s): %d items, %d characters",
            gid, turn, len(result.processed_items), len(result.processed_characters),
        )
        self.metrics.record_segment("generator", "markers", time.monotonic() - start)
        return result

    def _apply_declared_item(
        self,
        game_id: int,
        turn: int,
        declared: DeclaredItem,
        roster: List[Item],
    ) -> Optional[Dict[str, Any]]:
        name = declared.name.strip()
        if self.lifecycle.is_generic(ITEM, name):
            logger.debug("skipping generic declared item %r", name)
            return None

        update = parse_item_update(declared.description)
        extra: Dict[str, Any] = {"source": "generator"}
        if update is not None:
            extra["explicit"] = update.explicit
        context = update.reason if update else None
        item = match_entity(name, roster, self.threshold)

        if item is not None:
            applied = False
            if update is not None:
                applied = self.lifecycle.apply_state_change(
                    item, update.state, turn, context=context, extra=extra,
                )
            _merge_description(item, declared.description)
            self.lifecycle.mark_mentioned(item, turn)
            action = UPDATED
        else:
            item = self.lifecycle.create_item(
                game_id, name, turn,
                state=update.state if update else None,
                context=context,
                description=declared.description,
                extra=extra,
            )
            applied = bool(item.state_history)
            action = CREATED
            roster.append(item)

        self.store.save_item(item)
        self._log_action(ITEM, action, item)
        return _item_entry(item, action, name, applied)

    def _apply_declared_character(
        self,
        game_id: int,
        turn: int,
        declared: DeclaredCharacter,
        roster: List[Character],
    ) -> Optional[Dict[str, Any]]:
        name = declared.name.strip()
        if self.lifecycle.is_generic(CHARACTER, name):
            logger.debug("skipping generic declared character %r", name)
            return None

        update = parse_character_update(declared.description)
        extra: Dict[str, Any] = {"source": "generator"}
        if update is not None:
            extra["explicit"] = update.explicit
        target = update.true_name if update else None
        context = update.reason if update else None
        relationship = _relationship_label(declared.relationship)
        character = match_entity(name, roster, self.threshold)

        if character is not None:
            revealed = False
            if target:
                revealed = self.lifecycle.apply_identity(
                    character, target, turn, roster=roster, context=context, extra=extra,
                )
            _merge_description(character, declared.description)
            if relationship:
                character.relationship = relationship
            self.lifecycle.mark_mentioned(character, turn)
            action = UPDATED
        else:
            character = self.lifecycle.create_character(
                game_id, name, turn,
                reveal_target=target,
                roster=roster,
                context=context,
                description=declared.description,
                relationship=relationship,
                extra=extra,
            )
            revealed = bool(character.state_history)
            action = CREATED
            roster.append(character)

        self.store.save_character(character)
        self._log_action(CHARACTER, action, character)
        return _character_entry(character, action, name, target if revealed else None)

    # ------------------------------------------------------------------

    def _log_action(self, kind: str, action: str, entity: GameEntity) -> None:
        self.metrics.record_entity(kind, action)
        if action == CREATED:
            logger.info("created %s %r (id=%s)", kind.lower(), entity.name, entity.id)
        else:
            logger.debug("updated %s %r (id=%s)", kind.lower(), entity.name, entity.id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _validate_turn(turn_count: Any) -> int:
    if isinstance(turn_count, bool) or not isinstance(turn_count, int) or turn_count < 0:
        raise ValueError(f"Invalid turn count {turn_count!r}: must be a non-negative integer")
    return turn_count


def _coerce(model: Any, value: Any) -> Any:
    return value if isinstance(value, model) else model.model_validate(value)


def _dedupe(keys: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(k for k in keys if k))


def _matching(
    relationships: Sequence[Relationship], name: str, threshold: float
) -> List[Relationship]:
    """Relationships whose source names the candidate (fuzzy), in text order."""
    return [rel for rel in relationships if names_match(rel.source, name, threshold)]


def _context_for(content: str, name: str) -> Optional[str]:
    """Text around the first occurrence of *name*, or None."""
    idx = content.lower().find(name)
    if idx < 0:
        return None
    lo = max(0, idx - _CONTEXT_RADIUS)
    hi = min(len(content), idx + len(name) + _CONTEXT_RADIUS)
    return content[lo:hi].strip()


def _merge_description(entity: GameEntity, description: Optional[str]) -> None:
    # Only a longer description replaces the stored one.
    text = (description or "").strip()
    if text and len(text) > len(entity.description or ""):
        entity.description = text


def _relationship_label(value: Optional[str]) -> Optional[str]:
    label = (value or "").strip().upper()
    return label or None


def _item_entry(item: Item, action: str, candidate: str, applied: bool) -> Dict[str, Any]:
    return {
        "id": item.id,
        "canonical_id": item.canonical_id,
        "name": item.name,
        "candidate": candidate,
        "action": action,
        "state": item.current_state,
        "state_change": item.current_state if applied else None,
        "lost_at": item.lost_at,
    }


def _character_entry(
    character: Character, action: str, candidate: str, identity: Optional[str]
) -> Dict[str, Any]:
    return {
        "id": character.id,
        "canonical_id": character.canonical_id,
        "name": character.name,
        "candidate": candidate,
        "action": action,
        "identity": identity,
        "original_character_id": character.original_character_id,
        "aliases": list(character.aliases),
    }
