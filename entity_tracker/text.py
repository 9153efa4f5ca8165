"""Entity name utilities.

* Name normalisation (case, leading article, whitespace)
* Bounded edit-distance similarity (``rapidfuzz`` Levenshtein)
* English stopwords and phrase clean-up shared by the extractors
"""

from __future__ import annotations

import re
from typing import List, Optional

from rapidfuzz.distance import Levenshtein

# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_LEADING_ARTICLE_RE = re.compile(r"^(?:(?:the|a|an) )+", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_name(name: Optional[str]) -> str:
    """Canonical comparison key for an entity surface form.

    >>> normalize_name("  The   Rusty Sword ")
    'rusty sword'
    """
    if not name:
        return ""
    # Stacked articles ("the the sword") go together so a second pass
    # never changes the key.
    text = _WHITESPACE_RE.sub(" ", name.lower()).strip()
    return _LEADING_ARTICLE_RE.sub("", text, count=1)


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity in [0, 1].

    Strings whose lengths differ by more than half the longer length are
    treated as dissimilar without computing the distance.
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    len_a, len_b = len(a), len(b)
    max_len = max(len_a, len_b)
    if abs(len_a - len_b) > max_len * 0.5:
        return 0.0

    distance = Levenshtein.distance(a, b)
    return 1.0 - distance / max_len


# ---------------------------------------------------------------------------
# Stopwords / phrase helpers
# ---------------------------------------------------------------------------

PRONOUNS: set[str] = {
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us",
    "them", "this", "that", "these", "those", "his", "its", "their", "our",
    "my", "your", "who", "whom", "what", "which",
}

DETERMINERS: set[str] = {
    "the", "a", "an", "his", "her", "your", "this", "that", "these", "those",
    "my", "our", "their", "its", "some", "every", "each",
}

PREPOSITIONS: set[str] = {
    "in", "at", "on", "near", "inside", "outside", "to", "from", "through",
    "into", "onto", "against", "under", "beneath", "behind", "beside",
    "across", "toward", "towards", "within", "over", "above", "below",
    "around", "upon", "by", "of", "with", "for", "off",
}

STOPWORDS: set[str] = DETERMINERS | PRONOUNS | PREPOSITIONS | {
    "and", "or", "but", "if", "then", "so", "as", "than", "not", "no",
    "is", "are", "was", "were", "be", "been", "being", "am",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "must", "shall",
    "there", "here", "when", "where", "while", "after", "before", "until",
    "still", "just", "very", "too", "also", "only", "all", "any", "both",
    "actually", "really", "suddenly", "slowly", "finally", "now",
    "later", "soon", "meanwhile", "perhaps", "yet", "once", "again",
    "together", "away", "up", "down", "out",
}

# Verbs that end a noun phrase but don't carry an -ed suffix.
_PHRASE_VERBS: set[str] = {
    "broke", "gave", "lost", "found", "fell", "took", "shone", "sank",
    "stood", "lay", "held", "hung", "ran", "saw", "grew", "began", "became",
    "spoke", "stole", "drank", "ate", "threw", "caught", "snapped", "glows",
    "shines", "lies", "sits", "stands", "rests", "turns", "turned", "used",
    "said", "says", "went", "came", "left", "made", "kept", "burst",
}

# Adjective-like words dropped from the front of item phrases by the
# regex extractor ("rusty sword" -> "sword").
_MODIFIER_WORDS: set[str] = {
    "old", "new", "small", "large", "big", "little", "great", "long", "short",
    "tall", "ancient", "dark", "bright", "strange", "heavy", "light", "red",
    "blue", "green", "black", "white", "silver", "gold", "grey", "gray",
    "sharp", "worn", "cold", "warm", "hot", "tiny", "huge", "fine", "odd",
    "pale", "faint", "single", "empty", "full", "broken", "mysterious",
}
_MODIFIER_SUFFIXES: tuple[str, ...] = (
    "y", "ed", "en", "ous", "ful", "ic", "ish", "less", "ive", "ing",
)

_WORD_RE = re.compile(r"[A-Za-z][\w'-]*")


def _looks_like_verb(word: str) -> bool:
    w = word.lower()
    return w in _PHRASE_VERBS or (len(w) > 4 and w.endswith("ed"))


def _looks_like_modifier(word: str) -> bool:
    w = word.lower()
    if w in _MODIFIER_WORDS:
        return True
    return len(w) > 3 and w.endswith(_MODIFIER_SUFFIXES)


def words(text: str) -> List[str]:
    return _WORD_RE.findall(text or "")


def trim_phrase(phrase: str) -> str:
    """Cut a captured noun phrase at the first stopword or verb-like word.

    The first word is always kept.
    """
    tokens = phrase.split()
    kept: list[str] = []
    for idx, tok in enumerate(tokens):
        if idx > 0 and (tok.lower() in STOPWORDS or _looks_like_verb(tok)):
            break
        kept.append(tok)
    return " ".join(kept)


def tail_phrase(phrase: str) -> str:
    """Keep the words after the last stopword ("that night the guard" -> "guard")."""
    tokens = phrase.split()
    for idx in range(len(tokens) - 1, -1, -1):
        if tokens[idx].lower() in STOPWORDS:
            return " ".join(tokens[idx + 1:])
    return " ".join(tokens)


def head_noun_phrase(phrase: str) -> str:
    """Drop leading adjective-like modifiers, keeping at least one word."""
    tokens = trim_phrase(phrase).split()
    while len(tokens) > 1 and _looks_like_modifier(tokens[0]):
        tokens = tokens[1:]
    return " ".join(tokens)


def dedupe_names(names: List[str]) -> List[str]:
    """Normalize, drop empties and dedupe preserving first-seen order."""
    normalized = (normalize_name(n) for n in names)
    return list(dict.fromkeys(n for n in normalized if n))
