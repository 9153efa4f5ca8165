"""Configuration for the narrative entity tracker.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``ENTITY_TRACKER_*`` prefix.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

DEFAULT_GENERIC_ITEM_TERMS: List[str] = [
    "thing", "object", "stuff", "it", "them", "those", "something",
    "item", "one",
]

DEFAULT_GENERIC_CHARACTER_TERMS: List[str] = [
    "person", "someone", "man", "woman", "they", "he", "she", "somebody",
    "anyone", "everyone", "figure", "people",
]


@dataclass
class Config:
    """Central configuration for extraction, matching and storage."""

    # Storage
    db_path: str = ""  # resolved in load_config()

    # Extraction
    use_spacy: bool = True
    spacy_model: str = "en_core_web_sm"
    extraction_timeout: float = 5.0  # seconds, 0 disables the timeout

    # Matching
    match_threshold: float = 0.85

    # Deny-lists: never materialized as entities
    generic_item_terms: List[str] = field(
        default_factory=lambda: list(DEFAULT_GENERIC_ITEM_TERMS)
    )
    generic_character_terms: List[str] = field(
        default_factory=lambda: list(DEFAULT_GENERIC_CHARACTER_TERMS)
    )

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if not 0.0 < self.match_threshold <= 1.0:
            errors.append("ENTITY_TRACKER_MATCH_THRESHOLD must be in (0, 1]")
        if self.extraction_timeout < 0:
            errors.append("ENTITY_TRACKER_EXTRACTION_TIMEOUT must be >= 0")
        if self.use_spacy and not self.spacy_model:
            errors.append("ENTITY_TRACKER_SPACY_MODEL is required when spaCy is enabled")
        return errors


def _parse_bool(val: str) -> bool:
    return val.strip().lower() in ("1", "true", "yes", "on")


def _parse_terms(val: str) -> List[str]:
    return [t.strip().lower() for t in val.split(",") if t.strip()]


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        ENTITY_TRACKER_CONFIG
        ENTITY_TRACKER_DB
        ENTITY_TRACKER_USE_SPACY
        ENTITY_TRACKER_SPACY_MODEL
        ENTITY_TRACKER_EXTRACTION_TIMEOUT
        ENTITY_TRACKER_MATCH_THRESHOLD
        ENTITY_TRACKER_GENERIC_ITEMS       (comma separated)
        ENTITY_TRACKER_GENERIC_CHARACTERS  (comma separated)
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("ENTITY_TRACKER_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if not hasattr(cfg, key):
                continue
            current = getattr(cfg, key)
            if isinstance(current, list):
                if isinstance(val, list):
                    setattr(cfg, key, [str(v).strip().lower() for v in val])
                continue
            expected_type = type(current)
            try:
                if expected_type is bool and isinstance(val, str):
                    setattr(cfg, key, _parse_bool(val))
                else:
                    setattr(cfg, key, expected_type(val))
            except (ValueError, TypeError):
                pass  # skip bad values

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, object]] = {
        "ENTITY_TRACKER_DB": ("db_path", str),
        "ENTITY_TRACKER_USE_SPACY": ("use_spacy", _parse_bool),
        "ENTITY_TRACKER_SPACY_MODEL": ("spacy_model", str),
        "ENTITY_TRACKER_EXTRACTION_TIMEOUT": ("extraction_timeout", float),
        "ENTITY_TRACKER_MATCH_THRESHOLD": ("match_threshold", float),
        "ENTITY_TRACKER_GENERIC_ITEMS": ("generic_item_terms", _parse_terms),
        "ENTITY_TRACKER_GENERIC_CHARACTERS": ("generic_character_terms", _parse_terms),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                pass

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".entity-tracker" / "entities.sqlite")

    return cfg
