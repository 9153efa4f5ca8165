"""Entity, mention and relationship records."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# ---------------------------------------------------------------------------
# States and relationship types
# ---------------------------------------------------------------------------

DEFAULT_STATE = "DEFAULT"

ITEM_STATES: tuple[str, ...] = (
    DEFAULT_STATE,
    "BROKEN",
    "CONSUMED",
    "GIVEN_AWAY",
    "LOST",
    "FOUND",
    "MODIFIED",
    "USED",
)

# Entering one of these sets ``lost_at`` (first loss wins).
LOST_STATES = frozenset({"BROKEN", "CONSUMED", "GIVEN_AWAY", "LOST"})

IDENTITY = "IDENTITY"
STATE_CHANGE = "STATE_CHANGE"
IDENTITY_REVEALED = "IDENTITY_REVEALED"

ITEM = "ITEM"
CHARACTER = "CHARACTER"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

@dataclass
class Item:
    """A distinct story object within one game."""

    game_id: int
    name: str
    canonical_id: str
    id: Optional[int] = None
    aliases: List[str] = field(default_factory=list)
    description: Optional[str] = None
    current_state: str = DEFAULT_STATE
    state_history: List[Dict[str, Any]] = field(default_factory=list)
    acquired_at: Optional[int] = None
    last_mentioned_at: Optional[int] = None
    lost_at: Optional[int] = None

    kind = ITEM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "game_id": self.game_id,
            "canonical_id": self.canonical_id,
            "name": self.name,
            "aliases": list(self.aliases),
            "description": self.description,
            "current_state": self.current_state,
            "state_history": list(self.state_history),
            "acquired_at": self.acquired_at,
            "last_mentioned_at": self.last_mentioned_at,
            "lost_at": self.lost_at,
        }


@dataclass
class Character:
    """A distinct story person within one game.

    ``original_character_id`` is a weak reference: this character was revealed
    to *be* that other character. Both records stay addressable.
    """

    game_id: int
    name: str
    canonical_id: str
    id: Optional[int] = None
    aliases: List[str] = field(default_factory=list)
    description: Optional[str] = None
    relationship: str = "NEUTRAL"
    importance: int = 5
    state_history: List[Dict[str, Any]] = field(default_factory=list)
    original_character_id: Optional[int] = None
    first_appeared_at: Optional[int] = None
    last_appeared_at: Optional[int] = None
    last_mentioned_at: Optional[int] = None

    kind = CHARACTER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "game_id": self.game_id,
            "canonical_id": self.canonical_id,
            "name": self.name,
            "aliases": list(self.aliases),
            "description": self.description,
            "relationship": self.relationship,
            "importance": self.importance,
            "state_history": list(self.state_history),
            "original_character_id": self.original_character_id,
            "first_appeared_at": self.first_appeared_at,
            "last_appeared_at": self.last_appeared_at,
            "last_mentioned_at": self.last_mentioned_at,
        }


GameEntity = Union[Item, Character]


@dataclass(frozen=True)
class Mention:
    """One resolved extraction event. Written once, never updated."""

    entity_type: str  # ITEM | CHARACTER
    entity_id: int
    segment_id: int
    state_change: bool = False
    new_state: Optional[str] = None
    context: Optional[str] = None
    id: Optional[int] = None


# ---------------------------------------------------------------------------
# Extraction output (not persisted)
# ---------------------------------------------------------------------------

@dataclass
class Relationship:
    """Typed link found in narrative text.

    ``IDENTITY`` uses ``target``; ``STATE_CHANGE`` uses ``new_state``.
    ``position`` is the character offset of the match in the source text.
    """

    type: str
    source: str
    target: Optional[str] = None
    new_state: Optional[str] = None
    context: str = ""
    position: int = 0


@dataclass
class ExtractionResult:
    """Candidate mentions and relationships from one piece of text."""

    characters: List[str] = field(default_factory=list)
    items: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)
    concepts: List[str] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    strategy: str = ""

    def is_empty(self) -> bool:
        return not (
            self.characters or self.items or self.locations
            or self.concepts or self.relationships
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "characters": list(self.characters),
            "items": list(self.items),
            "locations": list(self.locations),
            "concepts": list(self.concepts),
            "relationships": [
                {k: v for k, v in vars(r).items() if v is not None}
                for r in self.relationships
            ],
            "strategy": self.strategy,
        }
