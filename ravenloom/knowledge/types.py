"""Domain types shared by the conflict detector, fact store and pipelines."""

import enum
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ravenloom.models import Fact, FactSourceType


def normalize_key(text: Optional[str]) -> Optional[str]:
    """Case-insensitive, trimmed, whitespace-collapsed key; None when empty."""
    if text is None:
        return None
    normalized = " ".join(text.casefold().split())
    return normalized or None


class ConflictType(str, enum.Enum):
    contradiction = "contradiction"
    update = "update"
    duplicate = "duplicate"


class ContradictionDecision(str, enum.Enum):
    accept_new = "accept_new"
    keep_old = "keep_old"
    skip = "skip"


class ExtractedFact(BaseModel):
    """A candidate fact produced by extraction, before it is materialized."""

    model_config = ConfigDict(extra="forbid")

    content: str = Field(min_length=1)
    entity_type: Optional[str] = None
    entity_name: Optional[str] = None
    attribute: Optional[str] = None
    value: Optional[str] = None
    category: Optional[str] = None
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    source_quote: Optional[str] = None

    @property
    def key(self) -> Optional[Tuple[str, str]]:
        """Normalized (entity, attribute) key, or None for free-text facts."""
        entity = normalize_key(self.entity_name)
        attribute = normalize_key(self.attribute)
        if entity and attribute and self.value is not None and self.value.strip():
            return entity, attribute
        return None


class FactConflict(BaseModel):
    """Judgment of how one extracted fact relates to one existing fact."""

    model_config = ConfigDict(extra="forbid")

    extracted_index: int = Field(default=0, ge=0)
    existing_fact_id: uuid.UUID
    conflict_type: ConflictType
    explanation: str
    existing_content: Optional[str] = None


class ResolutionAction(str, enum.Enum):
    create = "create"
    supersede = "supersede"
    keep_existing = "keep_existing"
    skip = "skip"


@dataclass(frozen=True)
class Resolution:
    """What materialization does with one extracted fact."""

    action: ResolutionAction
    existing_fact_id: Optional[uuid.UUID] = None

    @classmethod
    def create(cls) -> "Resolution":
        return cls(ResolutionAction.create)

    @classmethod
    def supersede(cls, existing_fact_id: uuid.UUID) -> "Resolution":
        return cls(ResolutionAction.supersede, existing_fact_id)

    @classmethod
    def keep_existing(cls, existing_fact_id: uuid.UUID) -> "Resolution":
        return cls(ResolutionAction.keep_existing, existing_fact_id)

    @classmethod
    def skip(cls) -> "Resolution":
        return cls(ResolutionAction.skip)


@dataclass(frozen=True)
class FactSource:
    """Provenance stamped on every materialized fact."""

    source_type: FactSourceType = FactSourceType.user_statement
    source_id: Optional[str] = None
    source_url: Optional[str] = None


@dataclass
class MaterializeResult:
    created: List[Fact] = field(default_factory=list)
    updated: List[Fact] = field(default_factory=list)
    existing: List[Fact] = field(default_factory=list)

    @property
    def facts(self) -> List[Fact]:
        return self.created + self.updated + self.existing
