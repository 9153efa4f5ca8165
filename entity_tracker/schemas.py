"""Inbound payloads from the story generator."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Segment(BaseModel):
    id: int = Field(..., ge=1)
    content: Optional[str] = Field(default="", description="Generated narrative prose")

    @field_validator("content", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        # Missing prose means zero mentions, not a rejected segment.
        return "" if value is None else value


class DeclaredItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None


class DeclaredCharacter(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    relationship: Optional[str] = Field(default=None, description="e.g. FRIENDLY, HOSTILE")


class GeneratorClaims(BaseModel):
    """Structured claims that accompany a generated segment."""

    model_config = ConfigDict(populate_by_name=True)

    new_items: List[DeclaredItem] = Field(default_factory=list, alias="newItems")
    new_characters: List[DeclaredCharacter] = Field(default_factory=list, alias="newCharacters")
