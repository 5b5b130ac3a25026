"""
Conflict detection between a candidate fact and current knowledge.

Structured candidates are compared by normalized (entity, attribute) key:
the same value is a duplicate, a compatible change (numeric increase,
append-only list, explicit change wording) is an update, anything else is
a contradiction. Free-text candidates are compared by string similarity
against other free-text facts in the scope. Detection never writes.
"""

import logging
import re
import uuid
from typing import List, Optional, Set, Tuple

from rapidfuzz import fuzz
from sqlalchemy.orm import Session

from ravenloom.knowledge.types import ConflictType, ExtractedFact, FactConflict
from ravenloom.models import Fact
from ravenloom.stores.fact_store import FactStore

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"^([-+]?\d+(?:,\d{3})*(?:[.,]\d+)?)\s*(.*)$")
_THOUSANDS_RE = re.compile(r",(?=\d{3}(?!\d))")
_LIST_SPLIT_RE = re.compile(r"\s*(?:,|;|&|\band\b)\s*")
_CHANGE_MARKERS_RE = re.compile(
    r"\b(now|changed|updated|actually|no longer|moved to|instead|correction|switched)\b"
)
_WORD_RE = re.compile(r"\w+")


def normalize_value(value: Optional[str]) -> str:
    if value is None:
        return ""
    return " ".join(value.casefold().split()).rstrip(".")


def _parse_number(value: str) -> Optional[Tuple[float, str]]:
    match = _NUMBER_RE.match(value)
    if not match:
        return None
    try:
        number = float(_THOUSANDS_RE.sub("", match.group(1)).replace(",", "."))
    except ValueError:
        return None
    return number, match.group(2).strip()


def _list_items(value: str) -> Set[str]:
    return {item for item in _LIST_SPLIT_RE.split(value) if item}


def _significant_words(text: str) -> Set[str]:
    return {w for w in _WORD_RE.findall(text.casefold()) if len(w) > 2}


def classify_values(
    old_value: Optional[str],
    new_value: Optional[str],
    statement: str = "",
) -> Tuple[ConflictType, str]:
    """
    Classify a value change on the same key.

    Returns:
        (conflict type, human explanation)
    """
    old = normalize_value(old_value)
    new = normalize_value(new_value)

    if old == new:
        return ConflictType.duplicate, "Same value is already recorded"

    old_number = _parse_number(old)
    new_number = _parse_number(new)
    if old_number and new_number and old_number[1] == new_number[1]:
        if new_number[0] > old_number[0]:
            return ConflictType.update, f"Value increased from {old_value} to {new_value}"

    old_items = _list_items(old)
    new_items = _list_items(new)
    if len(new_items) > 1 and old_items < new_items:
        return ConflictType.update, f"Adds to the existing list ({old_value})"

    if _CHANGE_MARKERS_RE.search(statement.casefold()):
        return ConflictType.update, f"Statement changes {old_value} to {new_value}"

    return ConflictType.contradiction, f"Existing value is {old_value}, new value is {new_value}"


class ConflictDetector:
    """
    Classifies a candidate fact against current facts in one scope.

    Args:
        db: SQLAlchemy session
        duplicate_threshold: Free-text similarity (0-1) treated as duplicate
        update_threshold: Free-text word overlap (0-1) treated as update
    """

    def __init__(
        self,
        db: Session,
        duplicate_threshold: float = 0.85,
        update_threshold: float = 0.5,
    ):
        self._facts = FactStore(db)
        self.duplicate_threshold = duplicate_threshold
        self.update_threshold = update_threshold

    def detect(
        self,
        scope_id: uuid.UUID,
        candidate: ExtractedFact,
        extracted_index: int = 0,
        statement: str = "",
    ) -> List[FactConflict]:
        key = candidate.key
        if key is not None:
            return self._detect_keyed(scope_id, candidate, key, extracted_index, statement)
        return self._detect_free_text(scope_id, candidate, extracted_index)

    def _detect_keyed(
        self,
        scope_id: uuid.UUID,
        candidate: ExtractedFact,
        key: Tuple[str, str],
        extracted_index: int,
        statement: str,
    ) -> List[FactConflict]:
        conflicts = []
        for existing in self._facts.current_for_key(scope_id, *key):
            conflict_type, explanation = classify_values(
                existing.value, candidate.value, statement or candidate.content
            )
            conflicts.append(self._conflict(existing, conflict_type, explanation, extracted_index))
        return conflicts

    def _detect_free_text(
        self,
        scope_id: uuid.UUID,
        candidate: ExtractedFact,
        extracted_index: int,
    ) -> List[FactConflict]:
        content = normalize_value(candidate.content)
        words = _significant_words(content)
        conflicts = []

        for existing in self._facts.current_free_text(scope_id):
            existing_content = normalize_value(existing.content)
            similarity = fuzz.ratio(content, existing_content) / 100.0
            if similarity >= self.duplicate_threshold:
                conflicts.append(self._conflict(
                    existing,
                    ConflictType.duplicate,
                    f"Nearly identical to existing knowledge (similarity {similarity:.2f})",
                    extracted_index,
                ))
                continue

            existing_words = _significant_words(existing_content)
            if not words or not existing_words:
                continue
            overlap = len(words & existing_words) / max(len(words), len(existing_words))
            if overlap >= self.update_threshold:
                conflicts.append(self._conflict(
                    existing,
                    ConflictType.update,
                    f"May update existing knowledge (word overlap {overlap:.2f})",
                    extracted_index,
                ))

        return conflicts

    @staticmethod
    def _conflict(
        existing: Fact,
        conflict_type: ConflictType,
        explanation: str,
        extracted_index: int,
    ) -> FactConflict:
        return FactConflict(
            extracted_index=extracted_index,
            existing_fact_id=existing.id,
            conflict_type=conflict_type,
            explanation=explanation,
            existing_content=existing.content,
        )
