"""Per-entity lifecycle: creation, item state transitions, identity reveals.

Every mutation of ``current_state`` or identity appends exactly one entry to
the entity's ``state_history``; history is never rewritten. Callers persist
the mutated records inside one store transaction.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, Optional, Sequence

from .matcher import DEFAULT_THRESHOLD, match_entity
from .models import (
    DEFAULT_STATE,
    IDENTITY_REVEALED,
    ITEM_STATES,
    LOST_STATES,
    Character,
    GameEntity,
    Item,
)
from .text import normalize_name

logger = logging.getLogger(__name__)


def new_canonical_id() -> str:
    return uuid.uuid4().hex


class EntityLifecycle:
    """State machine for items and characters of one game roster."""

    def __init__(
        self,
        generic_items: Iterable[str] = (),
        generic_characters: Iterable[str] = (),
        threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        self.generic_items = {normalize_name(t) for t in generic_items}
        self.generic_characters = {normalize_name(t) for t in generic_characters}
        self.threshold = threshold

    @classmethod
    def from_config(cls, cfg: Any) -> "EntityLifecycle":
        return cls(
            generic_items=cfg.generic_item_terms,
            generic_characters=cfg.generic_character_terms,
            threshold=cfg.match_threshold,
        )

    # ------------------------------------------------------------------
    # Deny-lists
    # ------------------------------------------------------------------

    def is_generic(self, kind: str, name: Optional[str]) -> bool:
        """True for empty or deny-listed surface forms of *kind* (ITEM/CHARACTER)."""
        key = normalize_name(name)
        if not key:
            return True
        terms = self.generic_items if kind == Item.kind else self.generic_characters
        return key in terms

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_item(
        self,
        game_id: int,
        name: str,
        turn: int,
        state: Optional[str] = None,
        context: Optional[str] = None,
        description: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Item:
        """New item; a known *state* is seeded directly, without a DEFAULT step."""
        if state is not None and state not in ITEM_STATES:
            logger.debug("ignoring unknown initial state %r for %r", state, name)
            state = None

        item = Item(
            game_id=game_id,
            name=name.strip(),
            canonical_id=new_canonical_id(),
            description=description.strip() if description else None,
            current_state=state or DEFAULT_STATE,
            acquired_at=turn,
            last_mentioned_at=turn,
        )
        if state is not None:
            item.state_history.append(_item_entry(turn, state, context, extra))
            if state in LOST_STATES:
                item.lost_at = turn
        return item

    def create_character(
        self,
        game_id: int,
        name: str,
        turn: int,
        reveal_target: Optional[str] = None,
        roster: Sequence[Character] = (),
        context: Optional[str] = None,
        description: Optional[str] = None,
        relationship: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Character:
        """New character, optionally already carrying an identity reveal.

        A reveal whose target is on the roster becomes the back-reference;
        otherwise the target is seeded as the first alias.
        """
        character = Character(
            game_id=game_id,
            name=name.strip(),
            canonical_id=new_canonical_id(),
            description=description.strip() if description else None,
            relationship=relationship or "NEUTRAL",
            first_appeared_at=turn,
            last_appeared_at=turn,
            last_mentioned_at=turn,
        )
        target = (reveal_target or "").strip()
        if target and not self.is_generic(Character.kind, target):
            original = match_entity(target, roster, self.threshold)
            if original is not None:
                character.original_character_id = original.id
            elif normalize_name(target) != normalize_name(character.name):
                character.aliases.append(target)
            character.state_history.append(_identity_entry(turn, target, context, extra))
        return character

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply_state_change(
        self,
        item: Item,
        new_state: Optional[str],
        turn: int,
        context: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move *item* to *new_state*. Returns False (no-op) for unknown states.

        Any state may follow any other. The first lost-class state sets
        ``lost_at``; later ones leave it alone.
        """
        if not new_state or new_state not in ITEM_STATES:
            logger.debug("ignoring unknown state %r for item %r", new_state, item.name)
            return False

        item.current_state = new_state
        item.state_history.append(_item_entry(turn, new_state, context, extra))
        if new_state in LOST_STATES and item.lost_at is None:
            item.lost_at = turn
        item.last_mentioned_at = turn
        return True

    def apply_identity(
        self,
        character: Character,
        target: Optional[str],
        turn: int,
        roster: Sequence[Character] = (),
        context: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record that *character* is revealed to be *target*.

        * target on the roster -> ``original_character_id`` = its id
        * otherwise            -> raw target appended to aliases (once)

        One ``IDENTITY_REVEALED`` entry is appended either way. Returns False
        (no-op) for an empty or generic target.
        """
        target = (target or "").strip()
        if not target or self.is_generic(Character.kind, target):
            logger.debug("ignoring identity reveal %r for %r", target, character.name)
            return False

        others = [c for c in roster if not _same_record(c, character)]
        original = match_entity(target, others, self.threshold)
        if original is not None:
            if original.original_character_id is not None and (
                original.original_character_id == character.id
            ):
                # Linking back would form A -> B -> A; keep the existing edge.
                logger.info(
                    "skipping identity link %r -> %r: would close a cycle",
                    character.name, original.name,
                )
            else:
                character.original_character_id = original.id
        else:
            add_alias(character, target)

        character.state_history.append(_identity_entry(turn, target, context, extra))
        return True

    # ------------------------------------------------------------------
    # Turn tracking / lookups
    # ------------------------------------------------------------------

    @staticmethod
    def mark_mentioned(entity: GameEntity, turn: int) -> None:
        entity.last_mentioned_at = turn
        if isinstance(entity, Character):
            entity.last_appeared_at = turn

    @staticmethod
    def resolve_original(
        character: Character, roster: Iterable[Character]
    ) -> Optional[Character]:
        """One-hop lookup of the back-reference; never followed further."""
        if character.original_character_id is None:
            return None
        for other in roster:
            if other.id == character.original_character_id and not _same_record(other, character):
                return other
        return None


def add_alias(entity: GameEntity, alias: str) -> bool:
    """Append *alias* unless the name or an existing alias already covers it."""
    key = normalize_name(alias)
    if not key or key == normalize_name(entity.name):
        return False
    if any(normalize_name(a) == key for a in entity.aliases):
        return False
    entity.aliases.append(alias)
    return True


def _same_record(a: GameEntity, b: GameEntity) -> bool:
    if a is b:
        return True
    return a.id is not None and a.id == b.id


def _item_entry(
    turn: int, state: str, context: Optional[str], extra: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    return {"turn": turn, "state": state, "context": context, "extra": dict(extra or {})}


def _identity_entry(
    turn: int, target: str, context: Optional[str], extra: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    return {
        "turn": turn,
        "type": IDENTITY_REVEALED,
        "newIdentity": target,
        "context": context,
        "extra": dict(extra or {}),
    }
