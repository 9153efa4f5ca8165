"""Roster matching: exact name, then alias, then fuzzy name similarity."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence, TypeVar

from .text import normalize_name, similarity

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.85

E = TypeVar("E")


def match_entity(
    name: Optional[str],
    roster: Iterable[E],
    threshold: float = DEFAULT_THRESHOLD,
) -> Optional[E]:
    """Return the roster member *name* refers to, or ``None``.

    Exact and alias hits always win over a higher fuzzy score elsewhere in
    the roster. Roster members need a ``name`` attribute and may carry
    ``aliases``.
    """
    normalized = normalize_name(name)
    if not normalized:
        return None
    members: Sequence[E] = list(roster)
    if not members:
        return None

    # 1. Exact name
    for entity in members:
        if normalize_name(getattr(entity, "name", "")) == normalized:
            return entity

    # 2. Alias
    for entity in members:
        for alias in getattr(entity, "aliases", None) or ():
            if normalize_name(alias) == normalized:
                return entity

    # 3. Fuzzy, best name score
    best: Optional[E] = None
    best_score = 0.0
    for entity in members:
        score = similarity(normalized, normalize_name(getattr(entity, "name", "")))
        if score > best_score:
            best_score = score
            best = entity

    if best is not None and best_score >= threshold:
        logger.debug("fuzzy match %r -> %r (%.3f)", name, getattr(best, "name", ""), best_score)
        return best
    return None


def names_match(a: Optional[str], b: Optional[str], threshold: float = DEFAULT_THRESHOLD) -> bool:
    """True when two bare surface forms would match each other."""
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return False
    return na == nb or similarity(na, nb) >= threshold
