"""Mention and relationship extraction from narrative text.

Two interchangeable strategies share :class:`ExtractionStrategy`:

* :class:`SpacyExtractor`: named entities, noun chunks and token patterns
  over a loaded spaCy pipeline.
* :class:`RegexExtractor`: capitalized runs, determiner / preposition
  phrases and relationship templates. Used whenever the spaCy model is
  unavailable, times out or errors.

Both return an :class:`~entity_tracker.models.ExtractionResult` with
normalized, deduplicated name lists, so callers never care which ran.
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional, Pattern, Tuple

import spacy
from spacy.language import Language

from .config import Config, load_config
from .models import IDENTITY, STATE_CHANGE, ExtractionResult, Relationship
from .text import (
    PREPOSITIONS,
    PRONOUNS,
    STOPWORDS,
    dedupe_names,
    head_noun_phrase,
    normalize_name,
    tail_phrase,
    trim_phrase,
    words,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Strategy interface
# ---------------------------------------------------------------------------

class ExtractionStrategy(ABC):
    """Turn raw narrative text into candidate mentions and relationships."""

    name: str = "base"

    @abstractmethod
    def extract(self, text: str) -> ExtractionResult:
        ...

    def _finalize(
        self,
        characters: List[str],
        items: List[str],
        locations: List[str],
        concepts: List[str],
        relationships: List[Relationship],
    ) -> ExtractionResult:
        """Normalize + dedupe name lists and relationships.

        Items that name a character or an identity endpoint are dropped so
        one surface form never feeds both rosters.
        """
        chars = dedupe_names(characters)
        rels = _dedupe_relationships(sorted(relationships, key=lambda r: r.position))
        people = set(chars)
        for rel in rels:
            if rel.type == IDENTITY:
                people.add(normalize_name(rel.source))
                people.add(normalize_name(rel.target))
        return ExtractionResult(
            characters=chars,
            items=[i for i in dedupe_names(items) if i not in people],
            locations=dedupe_names(locations),
            concepts=dedupe_names(concepts),
            relationships=rels,
            strategy=self.name,
        )


def _dedupe_relationships(relationships: List[Relationship]) -> List[Relationship]:
    """Drop empty links and repeats of the previous link for the same source.

    A later, different state for the same item is kept, so "lost ... found ...
    lost" yields three transitions in text order.
    """
    last: Dict[Tuple[str, str], str] = {}
    unique: List[Relationship] = []
    for rel in relationships:
        if not normalize_name(rel.source):
            continue
        other = rel.target if rel.type == IDENTITY else rel.new_state
        if not other or (rel.type == IDENTITY and not normalize_name(other)):
            continue
        key = (rel.type, normalize_name(rel.source))
        if last.get(key) == normalize_name(other):
            continue
        last[key] = normalize_name(other)
        unique.append(rel)
    return unique


# ---------------------------------------------------------------------------
# Regex strategy
# ---------------------------------------------------------------------------

_DET_WORDS = "the|a|an|his|her|your|this|that|these|those|my|our|their"
_DET = rf"(?:{_DET_WORDS})"
_PREP = "|".join(sorted(PREPOSITIONS - {"of", "with", "for", "by", "off"}, key=len, reverse=True))

# Capitalized word runs approximate named entities.
_NAMED_RUN_RE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")

# Lookaheads keep the determiner as the only consumed text so adjacent
# phrases ("the sword and the shield") are all seen.
_ITEM_RE = re.compile(
    r"\b(?i:" + _DET_WORDS + r")\s+(?=([a-z][a-z'-]*(?:\s+[a-z][a-z'-]*){0,3}))"
)
_LOCATION_RE = re.compile(
    r"\b(?i:" + _PREP + r")\s+(?:(?i:" + _DET_WORDS + r")\s+)?"
    r"(?=([A-Za-z][\w'-]*(?:\s+[A-Za-z][\w'-]*){0,3}))"
)

_NP = r"[A-Za-z][\w'-]*(?:\s+[A-Za-z][\w'-]*){0,3}"
_NP_LAZY = r"[A-Za-z][\w'-]*(?:\s+[A-Za-z][\w'-]*){0,3}?"
_ARTICLE = r"(?:(?:the|a|an)\s+)?"

# Identity reveal templates: named groups ``source`` and ``target``.
_IDENTITY_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(
        rf"\bthe\s+(?P<source>{_NP_LAZY})\s+(?:is|was)\s+(?:actually|really)\s+"
        rf"(?:(?:revealed|shown)\s+(?:as|to\s+be)\s+)?{_ARTICLE}(?P<target>{_NP})",
        re.IGNORECASE,
    ),
    re.compile(
        rf"\b(?P<source>{_NP_LAZY})\s+(?:revealed|identifies|identified)\s+"
        rf"(?:themselves|himself|herself|itself)\s+as\s+{_ARTICLE}(?P<target>{_NP})",
        re.IGNORECASE,
    ),
    re.compile(
        rf"\b(?P<source>{_NP_LAZY})\s+(?:is|was)\s+revealed\s+(?:to\s+be|as)\s+"
        rf"{_ARTICLE}(?P<target>{_NP})",
        re.IGNORECASE,
    ),
    re.compile(
        rf"\b(?P<source>{_NP_LAZY})\s+turn(?:s|ed)\s+out\s+to\s+be\s+{_ARTICLE}(?P<target>{_NP})",
        re.IGNORECASE,
    ),
)

# State change templates: named group ``source`` is the item.
_STATE_PATTERNS: Dict[str, Tuple[Pattern[str], ...]] = {
    "BROKEN": (
        re.compile(
            rf"\bthe\s+(?P<subject>{_NP_LAZY})\s+(?:broke|shattered|cracked|snapped|splintered)\b",
            re.IGNORECASE,
        ),
        re.compile(
            rf"\bthe\s+(?P<subject>{_NP_LAZY})\s+(?:is|was|were)\s+(?:broken|shattered|destroyed|smashed)\b",
            re.IGNORECASE,
        ),
        re.compile(
            rf"\b(?:broke|shattered|smashed|destroyed)\s+{_DET}\s+(?P<object>{_NP})",
            re.IGNORECASE,
        ),
    ),
    "CONSUMED": (
        re.compile(
            rf"\bthe\s+(?P<subject>{_NP_LAZY})\s+(?:is|was|were)\s+(?:consumed|drunk|eaten|devoured|used\s+up)\b",
            re.IGNORECASE,
        ),
        re.compile(
            rf"\b(?:consumed|drank|ate|devoured|used\s+up)\s+{_DET}\s+(?P<object>{_NP})",
            re.IGNORECASE,
        ),
    ),
    "GIVEN_AWAY": (
        re.compile(
            rf"\b(?:gave|handed|passed)\s+(?:away\s+|over\s+)?{_DET}\s+(?P<object>{_NP})",
            re.IGNORECASE,
        ),
        re.compile(
            rf"\bthe\s+(?P<subject>{_NP_LAZY})\s+(?:was|were)\s+(?:given|handed)\s+(?:away|over)\b",
            re.IGNORECASE,
        ),
    ),
    "LOST": (
        re.compile(
            rf"\b(?:lost|misplaced|dropped)\s+{_DET}\s+(?P<object>{_NP})",
            re.IGNORECASE,
        ),
        re.compile(
            rf"\bthe\s+(?P<subject>{_NP_LAZY})\s+(?:is|was|were)\s+(?:lost|missing|gone)\b",
            re.IGNORECASE,
        ),
    ),
    "FOUND": (
        re.compile(
            rf"\b(?:found|discovered|obtained|recovered)\s+{_DET}\s+(?P<object>{_NP})",
            re.IGNORECASE,
        ),
    ),
    "USED": (
        re.compile(rf"\bused\s+{_DET}\s+(?P<object>{_NP})", re.IGNORECASE),
    ),
    "MODIFIED": (
        re.compile(
            rf"\bthe\s+(?P<subject>{_NP_LAZY})\s+(?:was|were)\s+(?:modified|altered|enchanted|reforged|upgraded)\b",
            re.IGNORECASE,
        ),
    ),
}


def _is_content_phrase(phrase: str) -> bool:
    toks = phrase.split()
    return bool(toks) and toks[0].lower() not in STOPWORDS


class RegexExtractor(ExtractionStrategy):
    """Regex + heuristic extraction; no language model required."""

    name = "regex"

    def extract(self, text: str) -> ExtractionResult:
        if not text or not text.strip():
            return ExtractionResult(strategy=self.name)
        text_norm = text.replace("\n", " ")

        # Locations first: their capture positions exclude item phrases.
        locations: List[str] = []
        location_starts: set[int] = set()
        for match in _LOCATION_RE.finditer(text_norm):
            phrase = trim_phrase(match.group(1))
            if _is_content_phrase(phrase):
                locations.append(phrase)
                location_starts.add(match.start(1))

        items: List[str] = []
        for match in _ITEM_RE.finditer(text_norm):
            if match.start(1) in location_starts:
                continue
            phrase = head_noun_phrase(match.group(1))
            if _is_content_phrase(phrase):
                items.append(phrase)

        location_keys = {normalize_name(loc) for loc in locations}
        characters: List[str] = []
        for match in _NAMED_RUN_RE.finditer(text_norm):
            name = tail_phrase(match.group(0))
            if not name or normalize_name(name) in location_keys:
                continue
            characters.append(name)

        counts = Counter(w.lower() for w in words(text_norm))
        concepts = [
            w for w, n in counts.items()
            if n > 1 and len(w) > 3 and w not in STOPWORDS
        ]

        relationships = self.extract_relationships(text_norm)
        return self._finalize(characters, items, locations, concepts, relationships)

    def extract_relationships(self, text: str) -> List[Relationship]:
        """Identity and state-change relationships from the templates."""
        relationships: List[Relationship] = []
        for pattern in _IDENTITY_PATTERNS:
            for match in pattern.finditer(text):
                source = tail_phrase(match.group("source"))
                target = trim_phrase(match.group("target"))
                if not source or not _is_content_phrase(target):
                    continue
                relationships.append(Relationship(
                    type=IDENTITY,
                    source=source,
                    target=target,
                    context=match.group(0),
                    position=match.start(),
                ))

        for state, patterns in _STATE_PATTERNS.items():
            for pattern in patterns:
                for match in pattern.finditer(text):
                    if "subject" in pattern.groupindex:
                        source = head_noun_phrase(tail_phrase(match.group("subject")))
                    else:
                        source = head_noun_phrase(match.group("object"))
                    if not _is_content_phrase(source):
                        continue
                    relationships.append(Relationship(
                        type=STATE_CHANGE,
                        source=source,
                        new_state=state,
                        context=match.group(0),
                        position=match.start(),
                    ))
        return relationships


# ---------------------------------------------------------------------------
# spaCy strategy
# ---------------------------------------------------------------------------

_CHARACTER_LABELS = {"PERSON"}
_LOCATION_LABELS = {"LOC", "GPE", "FAC"}
_ITEM_LABELS = {"PRODUCT", "WORK_OF_ART"}
_NUMERIC_LABELS = {"DATE", "TIME", "PERCENT", "MONEY", "QUANTITY", "ORDINAL", "CARDINAL"}

_IDENTITY_PHRASES: Tuple[Tuple[str, ...], ...] = (
    ("is", "actually"),
    ("was", "actually"),
    ("revealed", "as"),
    ("turns", "out", "to", "be"),
    ("turned", "out", "to", "be"),
    ("is", "really"),
    ("was", "really"),
)

_STATE_VERBS: Dict[str, str] = {
    "broke": "BROKEN",
    "shattered": "BROKEN",
    "cracked": "BROKEN",
    "snapped": "BROKEN",
    "splintered": "BROKEN",
    "smashed": "BROKEN",
    "destroyed": "BROKEN",
    "consumed": "CONSUMED",
    "drank": "CONSUMED",
    "ate": "CONSUMED",
    "devoured": "CONSUMED",
    "used": "USED",
    "gave": "GIVEN_AWAY",
    "handed": "GIVEN_AWAY",
    "passed": "GIVEN_AWAY",
    "lost": "LOST",
    "misplaced": "LOST",
    "dropped": "LOST",
    "found": "FOUND",
    "discovered": "FOUND",
    "obtained": "FOUND",
    "recovered": "FOUND",
    "modified": "MODIFIED",
    "altered": "MODIFIED",
    "enchanted": "MODIFIED",
    "reforged": "MODIFIED",
}


class _TaggedSpan:
    __slots__ = ("start", "end", "text", "is_item")

    def __init__(self, start: int, end: int, text: str, is_item: bool) -> None:
        self.start = start
        self.end = end
        self.text = text
        self.is_item = is_item


class SpacyExtractor(ExtractionStrategy):
    """Extraction over a loaded spaCy pipeline.

    Works with any pipeline that sets entities; noun chunks are used only
    when the pipeline provides a dependency parse, sentences only when it
    sets sentence boundaries.
    """

    name = "spacy"

    def __init__(self, nlp: Language) -> None:
        self.nlp = nlp

    def extract(self, text: str) -> ExtractionResult:
        if not text or not text.strip():
            return ExtractionResult(strategy=self.name)

        doc = self.nlp(text)
        characters: List[str] = []
        items: List[str] = []
        locations: List[str] = []
        concepts: List[str] = []
        spans: List[_TaggedSpan] = []

        for ent in doc.ents:
            label = ent.label_
            if label in _CHARACTER_LABELS:
                characters.append(ent.text)
            elif label in _LOCATION_LABELS:
                locations.append(ent.text)
            elif label in _ITEM_LABELS:
                items.append(ent.text)
            elif label not in _NUMERIC_LABELS:
                concepts.append(ent.text)
            if label not in _NUMERIC_LABELS:
                spans.append(_TaggedSpan(
                    ent.start, ent.end, ent.text,
                    is_item=label not in _CHARACTER_LABELS | _LOCATION_LABELS,
                ))

        if doc.has_annotation("DEP"):
            for chunk in doc.noun_chunks:
                if chunk.text.lower() in PRONOUNS or chunk.root.pos_ != "NOUN":
                    continue
                if chunk.root.ent_type_:
                    continue  # already tagged as a named entity
                items.append(chunk.text)
                spans.append(_TaggedSpan(chunk.start, chunk.end, chunk.text, is_item=True))

        spans.sort(key=lambda s: s.start)
        relationships = self._relationships(doc, spans)
        return self._finalize(characters, items, locations, concepts, relationships)

    def _relationships(self, doc: Any, spans: List[_TaggedSpan]) -> List[Relationship]:
        if doc.has_annotation("SENT_START"):
            sentences = list(doc.sents)
        else:
            sentences = [doc[:]]

        relationships: List[Relationship] = []
        for sent in sentences:
            lowered = [tok.lower_ for tok in sent]
            in_sent = [s for s in spans if s.start >= sent.start and s.end <= sent.end]

            for phrase in _IDENTITY_PHRASES:
                for start in _find_phrase(lowered, phrase):
                    m_start = sent.start + start
                    m_end = m_start + len(phrase)
                    before = _nearest_before(in_sent, m_start)
                    after = _nearest_after(in_sent, m_end)
                    if before is None or after is None:
                        continue
                    relationships.append(Relationship(
                        type=IDENTITY,
                        source=before.text,
                        target=after.text,
                        context=sent.text,
                        position=doc[m_start].idx,
                    ))

            items_in_sent = [s for s in in_sent if s.is_item]
            for idx, tok in enumerate(lowered):
                state = _STATE_VERBS.get(tok)
                if state is None:
                    continue
                before = _nearest_before(items_in_sent, sent.start + idx)
                if before is None:
                    continue
                relationships.append(Relationship(
                    type=STATE_CHANGE,
                    source=before.text,
                    new_state=state,
                    context=sent.text,
                    position=doc[sent.start + idx].idx,
                ))
        return relationships


def _find_phrase(tokens: List[str], phrase: Tuple[str, ...]) -> List[int]:
    n = len(phrase)
    return [
        i for i in range(len(tokens) - n + 1)
        if tuple(tokens[i:i + n]) == phrase
    ]


def _nearest_before(spans: List[_TaggedSpan], index: int) -> Optional[_TaggedSpan]:
    found = None
    for span in spans:
        if span.end <= index:
            found = span
    return found


def _nearest_after(spans: List[_TaggedSpan], index: int) -> Optional[_TaggedSpan]:
    for span in spans:
        if span.start >= index:
            return span
    return None


# ---------------------------------------------------------------------------
# Primary-with-fallback wrapper
# ---------------------------------------------------------------------------

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="extract")
        return _executor


class ResilientExtractor(ExtractionStrategy):
    """Run *primary*; on timeout or backend error run *fallback* instead."""

    def __init__(
        self,
        primary: ExtractionStrategy,
        fallback: ExtractionStrategy,
        timeout: float = 0.0,
        metrics: Optional[Any] = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.timeout = timeout
        self.metrics = metrics
        self.name = primary.name

    def extract(self, text: str) -> ExtractionResult:
        try:
            if self.timeout and self.timeout > 0:
                future = _get_executor().submit(self.primary.extract, text)
                return future.result(timeout=self.timeout)
            return self.primary.extract(text)
        except FutureTimeoutError:
            logger.warning(
                "%s extraction exceeded %.1fs, using %s",
                self.primary.name, self.timeout, self.fallback.name,
            )
        except Exception as exc:
            logger.warning(
                "%s extraction failed (%s), using %s",
                self.primary.name, exc, self.fallback.name,
            )
        if self.metrics is not None:
            self.metrics.inc_fallback()
        return self.fallback.extract(text)


# ---------------------------------------------------------------------------
# Strategy selection
# ---------------------------------------------------------------------------

_SPACY_MODELS: Dict[str, Optional[Language]] = {}
_SPACY_LOCK = threading.Lock()


def load_spacy_model(model_name: str) -> Optional[Language]:
    """Load a spaCy pipeline once per process.

    Returns ``None`` (and remembers it) when the model is not installed,
    cannot be imported, or is incompatible with the installed spaCy.
    """
    with _SPACY_LOCK:
        if model_name in _SPACY_MODELS:
            return _SPACY_MODELS[model_name]
        try:
            nlp: Optional[Language] = spacy.load(model_name)
            logger.info("spaCy pipeline %s loaded", model_name)
        except (OSError, ImportError, ValueError) as exc:
            logger.warning(
                "spaCy model %s unavailable (%s), regex extraction will be used",
                model_name, exc,
            )
            nlp = None
        _SPACY_MODELS[model_name] = nlp
        return nlp


def get_extractor(config: Optional[Config] = None, metrics: Optional[Any] = None) -> ExtractionStrategy:
    """Pick the extraction strategy for this process."""
    cfg = config or load_config()
    fallback = RegexExtractor()
    if not cfg.use_spacy:
        logger.info("spaCy disabled by configuration, using regex extraction")
        return fallback
    nlp = load_spacy_model(cfg.spacy_model)
    if nlp is None:
        if metrics is not None:
            metrics.inc_fallback()
        return fallback
    return ResilientExtractor(
        SpacyExtractor(nlp), fallback, timeout=cfg.extraction_timeout, metrics=metrics,
    )
