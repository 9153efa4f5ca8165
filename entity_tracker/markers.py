"""State and identity markers in generator-supplied descriptions.

The story generator may annotate a declared item or character with an
explicit tag::

    ITEM_UPDATE: Health Potion | CONSUMED | drank it all
    CHARACTER_UPDATE: Hooded Stranger | Queen Elara | removed her hood

Explicit tags win. Without one, keyword heuristics are tried.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Pattern

from .models import ITEM_STATES
from .text import trim_phrase

logger = logging.getLogger(__name__)

_ITEM_UPDATE_RE: Pattern[str] = re.compile(
    r"ITEM_UPDATE:\s*(?P<name>.*?)\s*\|\s*(?P<state>.*?)\s*\|\s*(?P<reason>.*?)\s*(?:\n|$)",
    re.IGNORECASE,
)

_CHARACTER_UPDATE_RE: Pattern[str] = re.compile(
    r"CHARACTER_UPDATE:\s*(?P<name>.*?)\s*\|\s*(?P<true_name>.*?)\s*\|\s*(?P<reason>.*?)\s*(?:\n|$)",
    re.IGNORECASE,
)

_ITEM_STATE_KEYWORDS: tuple[tuple[Pattern[str], str], ...] = (
    (re.compile(r"\b(?:broken|shattered|cracked|damaged)\b", re.IGNORECASE), "BROKEN"),
    (re.compile(r"\b(?:consumed|used up|empty|depleted)\b", re.IGNORECASE), "CONSUMED"),
    (re.compile(r"\b(?:given away|handed over|transferred)\b", re.IGNORECASE), "GIVEN_AWAY"),
    (re.compile(r"\b(?:lost|missing|misplaced)\b", re.IGNORECASE), "LOST"),
    (re.compile(r"\b(?:found|discovered|obtained)\b", re.IGNORECASE), "FOUND"),
    (re.compile(r"\b(?:modified|altered|changed)\b", re.IGNORECASE), "MODIFIED"),
)

_NAME = r"(?:(?:the|a|an)\s+)?(?P<true_name>[\w'-]+(?:\s+[\w'-]+){0,3})"

_IDENTITY_KEYWORDS: tuple[Pattern[str], ...] = (
    re.compile(rf"\b(?:actually\s+(?:is|was)|(?:is|was)\s+actually)\s+{_NAME}", re.IGNORECASE),
    re.compile(rf"\brevealed\s+to\s+be\s+{_NAME}", re.IGNORECASE),
    re.compile(rf"\btrue\s+identity\s+is\s+{_NAME}", re.IGNORECASE),
    re.compile(rf"\b(?:secretly\s+(?:is|was)|(?:is|was)\s+secretly)\s+{_NAME}", re.IGNORECASE),
)


@dataclass
class StateUpdate:
    """An item state parsed from a description."""

    state: str
    reason: str
    name: Optional[str] = None
    explicit: bool = False


@dataclass
class IdentityUpdate:
    """A character's true identity parsed from a description."""

    true_name: str
    reason: str
    name: Optional[str] = None
    explicit: bool = False


def parse_item_update(description: Optional[str]) -> Optional[StateUpdate]:
    """Return the item state a description declares, or ``None``."""
    if not description:
        return None

    match = _ITEM_UPDATE_RE.search(description)
    if match:
        state = match.group("state").strip().upper().replace(" ", "_")
        if state in ITEM_STATES:
            return StateUpdate(
                state=state,
                reason=match.group("reason").strip(),
                name=match.group("name").strip() or None,
                explicit=True,
            )
        logger.warning("ITEM_UPDATE marker with unknown state %r ignored", state)

    for pattern, state in _ITEM_STATE_KEYWORDS:
        if pattern.search(description):
            return StateUpdate(state=state, reason=description)
    return None


def parse_character_update(description: Optional[str]) -> Optional[IdentityUpdate]:
    """Return the true identity a description reveals, or ``None``."""
    if not description:
        return None

    match = _CHARACTER_UPDATE_RE.search(description)
    if match and match.group("true_name").strip():
        return IdentityUpdate(
            true_name=match.group("true_name").strip(),
            reason=match.group("reason").strip(),
            name=match.group("name").strip() or None,
            explicit=True,
        )

    for pattern in _IDENTITY_KEYWORDS:
        match = pattern.search(description)
        if match:
            true_name = trim_phrase(match.group("true_name"))
            if true_name:
                return IdentityUpdate(true_name=true_name, reason=description)
    return None
