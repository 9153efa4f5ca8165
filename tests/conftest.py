"""Shared fixtures for entity tracker tests."""

from __future__ import annotations

import pytest
import spacy

from entity_tracker.config import Config
from entity_tracker.extraction import RegexExtractor
from entity_tracker.lifecycle import EntityLifecycle
from entity_tracker.metrics import TrackerMetrics, reset_metrics
from entity_tracker.processor import SegmentProcessor
from entity_tracker.storage import SQLiteEntityStore


# ---------------------------------------------------------------------------
# Keep the developer's environment out of the tests
# ---------------------------------------------------------------------------

_ENV_VARS = (
    "ENTITY_TRACKER_CONFIG",
    "ENTITY_TRACKER_DB",
    "ENTITY_TRACKER_USE_SPACY",
    "ENTITY_TRACKER_SPACY_MODEL",
    "ENTITY_TRACKER_EXTRACTION_TIMEOUT",
    "ENTITY_TRACKER_MATCH_THRESHOLD",
    "ENTITY_TRACKER_GENERIC_ITEMS",
    "ENTITY_TRACKER_GENERIC_CHARACTERS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _clean_metrics():
    """Each test starts from zeroed process-wide counters."""
    reset_metrics()
    yield
    reset_metrics()


# ---------------------------------------------------------------------------
# Storage fixture (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path):
    """Regex-only config pointing at a temp database."""
    return Config(db_path=str(tmp_path / "entities.sqlite"), use_spacy=False)


@pytest.fixture
def tmp_store(config):
    """Create a fresh SQLiteEntityStore backed by a temp SQLite file."""
    s = SQLiteEntityStore(db_path=config.db_path)
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

@pytest.fixture
def regex_extractor():
    return RegexExtractor()


@pytest.fixture
def blank_nlp():
    """spaCy pipeline with a sentencizer and an entity ruler, no model download."""
    nlp = spacy.blank("en")
    nlp.add_pipe("sentencizer")
    ruler = nlp.add_pipe("entity_ruler")
    ruler.add_patterns([
        {"label": "PERSON", "pattern": "beggar"},
        {"label": "PERSON", "pattern": "King"},
        {"label": "PERSON", "pattern": "Mira"},
        {"label": "PRODUCT", "pattern": "sword"},
        {"label": "PRODUCT", "pattern": "lantern"},
        {"label": "GPE", "pattern": "Eldham"},
    ])
    return nlp


# ---------------------------------------------------------------------------
# Lifecycle / processor
# ---------------------------------------------------------------------------

@pytest.fixture
def lifecycle(config):
    return EntityLifecycle.from_config(config)


@pytest.fixture
def metrics():
    return TrackerMetrics()


@pytest.fixture
def processor(tmp_store, regex_extractor, lifecycle, config, metrics):
    return SegmentProcessor(
        tmp_store,
        extractor=regex_extractor,
        lifecycle=lifecycle,
        config=config,
        metrics=metrics,
    )


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

SAMPLE_SEGMENTS = [
    {"id": 1, "content": "The rusty sword gleamed in the torchlight."},
    {"id": 2, "content": "The sword shattered against the stone wall."},
    {"id": 3, "content": "The beggar was actually revealed as the King."},
]


@pytest.fixture
def sample_segments():
    return [dict(s) for s in SAMPLE_SEGMENTS]
