"""
Scoped fact repository with supersession heads.

Facts are append-mostly: an update inserts a new fact, marks the previous
one with ``superseded_by`` and moves the key head in the same transaction.
Only facts with no ``superseded_by`` and an open ``valid_until`` are current.

For structured facts, ``fact_key_heads`` holds exactly one row per
(scope, entity, attribute) key that has a current fact, pointing at it.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ravenloom.errors import NotFound, StalePreview
from ravenloom.knowledge.types import (
    ExtractedFact,
    FactSource,
    MaterializeResult,
    Resolution,
    ResolutionAction,
)
from ravenloom.models import Fact, FactKeyHead, Scope, get_current_utc_time
from ravenloom.observability.metrics import facts_materialized_total

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"\w+")


def current_fact_filter(now: Optional[datetime] = None):
    """SQL criteria selecting current facts."""
    now = now or get_current_utc_time()
    return (
        Fact.superseded_by.is_(None),
        or_(Fact.valid_until.is_(None), Fact.valid_until > now),
    )


def search_terms(text: str) -> List[str]:
    """Lower-cased words longer than two characters, in order, without repeats."""
    seen = []
    for word in _TERM_RE.findall(text.lower()):
        if len(word) > 2 and word not in seen:
            seen.append(word)
    return seen


@dataclass
class FactFilters:
    category: Optional[str] = None
    entity_name: Optional[str] = None
    attribute: Optional[str] = None
    text: Optional[str] = None
    limit: int = 100


class FactStore:
    """
    Repository for facts within explicit scopes.

    Queries never widen to descendant or ancestor scopes on their own; callers
    pass the exact scope ids they want searched.

    Args:
        db: SQLAlchemy session
    """

    def __init__(self, db: Session):
        self._db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, fact_id: uuid.UUID) -> Optional[Fact]:
        return self._db.query(Fact).filter(Fact.id == fact_id).first()

    def require(self, fact_id: uuid.UUID) -> Fact:
        fact = self.get(fact_id)
        if fact is None:
            raise NotFound("fact", fact_id)
        return fact

    def query(
        self,
        scope_ids: Sequence[uuid.UUID],
        filters: Optional[FactFilters] = None,
    ) -> List[Fact]:
        """
        Return current facts for the given scopes, newest first.

        Args:
            scope_ids: Scopes to read; nothing outside this list is returned
            filters: Optional category / entity / attribute / text filters

        Returns:
            Current facts matching the filters
        """
        filters = filters or FactFilters()
        if not scope_ids:
            return []

        query = self._db.query(Fact).filter(
            Fact.scope_id.in_(list(scope_ids)),
            *current_fact_filter(),
        )
        if filters.category:
            query = query.filter(Fact.category == filters.category)
        if filters.entity_name:
            query = query.filter(Fact.entity_name.ilike(filters.entity_name.strip()))
        if filters.attribute:
            query = query.filter(Fact.attribute.ilike(filters.attribute.strip()))
        if filters.text:
            query = query.filter(Fact.content.ilike(f"%{filters.text}%"))

        return query.order_by(Fact.created_at.desc()).limit(filters.limit).all()

    def current_for_key(
        self,
        scope_id: uuid.UUID,
        entity_key: str,
        attribute_key: str,
    ) -> List[Fact]:
        """Current facts sharing a normalized key (at most one when heads are intact)."""
        return (
            self._db.query(Fact)
            .filter(
                Fact.scope_id == scope_id,
                Fact.entity_key == entity_key,
                Fact.attribute_key == attribute_key,
                *current_fact_filter(),
            )
            .order_by(Fact.created_at.desc())
            .all()
        )

    def current_free_text(self, scope_id: uuid.UUID) -> List[Fact]:
        return (
            self._db.query(Fact)
            .filter(
                Fact.scope_id == scope_id,
                Fact.entity_key.is_(None),
                *current_fact_filter(),
            )
            .order_by(Fact.created_at.desc())
            .all()
        )

    def search(
        self,
        scope_ids: Sequence[uuid.UUID],
        question: str,
        limit: int = 50,
        fallback_limit: int = 20,
    ) -> List[Fact]:
        """
        Keyword retrieval for Ask.

        Facts are ranked by how many question terms they mention, newest first
        on ties. When no term matches, the most recent current facts are
        returned instead so the answer still has context.
        """
        if not scope_ids:
            return []

        terms = search_terms(question)
        matches: List[Fact] = []
        if terms:
            clauses = []
            for term in terms:
                pattern = f"%{term}%"
                clauses.extend([
                    Fact.content.ilike(pattern),
                    Fact.entity_name.ilike(pattern),
                    Fact.value.ilike(pattern),
                ])
            matches = (
                self._db.query(Fact)
                .filter(Fact.scope_id.in_(list(scope_ids)), *current_fact_filter())
                .filter(or_(*clauses))
                .order_by(Fact.created_at.desc())
                .all()
            )

        if not matches:
            return self.query(scope_ids, FactFilters(limit=fallback_limit))

        def score(fact: Fact) -> int:
            haystack = " ".join(
                part for part in (fact.content, fact.entity_name, fact.value) if part
            ).lower()
            return sum(1 for term in terms if term in haystack)

        # Stable sort keeps newest-first among equal scores
        ranked = sorted(matches, key=score, reverse=True)
        return ranked[:limit]

    def history(self, fact_id: uuid.UUID) -> List[Fact]:
        """
        Return the supersession log containing a fact, oldest first.

        Structured facts share a log per (scope, entity, attribute) key;
        free-text facts are followed through their superseded_by links.
        """
        fact = self.require(fact_id)
        if fact.is_structured:
            return (
                self._db.query(Fact)
                .filter(
                    Fact.scope_id == fact.scope_id,
                    Fact.entity_key == fact.entity_key,
                    Fact.attribute_key == fact.attribute_key,
                )
                .order_by(Fact.created_at.asc())
                .all()
            )

        chain = [fact]
        seen = {fact.id}
        current = fact
        while True:
            previous = self._db.query(Fact).filter(Fact.superseded_by == current.id).first()
            if previous is None or previous.id in seen:
                break
            chain.insert(0, previous)
            seen.add(previous.id)
            current = previous

        current = fact
        while current.superseded_by is not None and current.superseded_by not in seen:
            current = self.require(current.superseded_by)
            chain.append(current)
            seen.add(current.id)
        return chain

    def head(
        self,
        scope_id: uuid.UUID,
        entity_key: str,
        attribute_key: str,
        for_update: bool = False,
    ) -> Optional[FactKeyHead]:
        query = self._db.query(FactKeyHead).filter(
            FactKeyHead.scope_id == scope_id,
            FactKeyHead.entity_key == entity_key,
            FactKeyHead.attribute_key == attribute_key,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def invalidate(self, fact_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Fact:
        """
        Logically delete a fact by closing its validity window.

        The key head is dropped with it, so a forgotten key has no current
        fact. Invalidating a fact that is no longer current is a no-op.
        """
        fact = self.require(fact_id)
        if not fact.is_current():
            return fact

        fact.valid_until = get_current_utc_time()
        if fact.is_structured:
            self._db.query(FactKeyHead).filter(
                FactKeyHead.current_fact_id == fact.id
            ).delete(synchronize_session=False)
        self._db.commit()
        self._db.refresh(fact)
        logger.info("Invalidated fact %s in scope %s by %s", fact.id, fact.scope_id, user_id)
        return fact

    def materialize(
        self,
        scope: Scope,
        items: Sequence[Tuple[ExtractedFact, Resolution]],
        created_by: Optional[uuid.UUID],
        source: Optional[FactSource] = None,
    ) -> MaterializeResult:
        """
        Apply resolved extracted facts to the scope.

        Runs inside the caller's transaction and does not commit. Any
        mismatch between the expected and the actual key head raises
        StalePreview; the caller must roll back.

        Args:
            scope: Target scope
            items: (extracted fact, resolution) pairs
            created_by: Attributed author
            source: Provenance for created facts

        Returns:
            MaterializeResult with created, superseding and reused facts
        """
        source = source or FactSource()
        result = MaterializeResult()
        now = get_current_utc_time()

        for extracted, resolution in items:
            if resolution.action == ResolutionAction.skip:
                continue

            if resolution.action == ResolutionAction.keep_existing:
                existing = self.get(resolution.existing_fact_id)
                if existing is None or not existing.is_current(now):
                    raise StalePreview(
                        f"Fact {resolution.existing_fact_id} is no longer current"
                    )
                result.existing.append(existing)
                facts_materialized_total.labels(action="existing").inc()
                continue

            fact = self._build_fact(scope, extracted, created_by, source, now)
            if resolution.action == ResolutionAction.create:
                self._insert(fact, extracted)
                result.created.append(fact)
                facts_materialized_total.labels(action="created").inc()
            elif resolution.action == ResolutionAction.supersede:
                self._supersede(fact, extracted, resolution.existing_fact_id, now)
                result.updated.append(fact)
                facts_materialized_total.labels(action="superseded").inc()

        return result

    def _build_fact(
        self,
        scope: Scope,
        extracted: ExtractedFact,
        created_by: Optional[uuid.UUID],
        source: FactSource,
        now: datetime,
    ) -> Fact:
        key = extracted.key
        return Fact(
            id=uuid.uuid4(),
            team_id=scope.team_id,
            scope_id=scope.id,
            content=extracted.content.strip(),
            entity_type=extracted.entity_type,
            entity_name=extracted.entity_name.strip() if key else extracted.entity_name,
            attribute=extracted.attribute.strip() if key else extracted.attribute,
            value=extracted.value.strip() if key else extracted.value,
            entity_key=key[0] if key else None,
            attribute_key=key[1] if key else None,
            category=extracted.category,
            confidence_score=extracted.confidence,
            source_type=source.source_type,
            source_id=source.source_id,
            source_quote=extracted.source_quote,
            source_url=source.source_url,
            created_by=created_by,
            valid_from=now,
        )

    def _insert(self, fact: Fact, extracted: ExtractedFact) -> None:
        self._db.add(fact)
        key = extracted.key
        if key is None:
            self._db.flush()
            return

        if self.head(fact.scope_id, *key, for_update=True) is not None:
            raise StalePreview(
                f"'{extracted.entity_name} / {extracted.attribute}' gained a current fact after preview"
            )
        self._db.add(FactKeyHead(
            scope_id=fact.scope_id,
            entity_key=key[0],
            attribute_key=key[1],
            current_fact_id=fact.id,
        ))
        try:
            self._db.flush()
        except IntegrityError as exc:
            logger.warning("Concurrent head insert for key %s in scope %s", key, fact.scope_id)
            raise StalePreview(
                f"'{extracted.entity_name} / {extracted.attribute}' was written concurrently"
            ) from exc

    def _supersede(
        self,
        fact: Fact,
        extracted: ExtractedFact,
        previous_id: uuid.UUID,
        now: datetime,
    ) -> None:
        previous = self.get(previous_id)
        if previous is None or not previous.is_current(now):
            raise StalePreview(f"Fact {previous_id} is no longer current")

        key = extracted.key
        head = None
        if key is not None:
            if (previous.entity_key, previous.attribute_key) != key:
                raise StalePreview(f"Fact {previous_id} belongs to a different key")
            head = self.head(fact.scope_id, *key, for_update=True)
            if head is None or head.current_fact_id != previous_id:
                raise StalePreview(f"Fact {previous_id} is no longer the current head")

        self._db.add(fact)
        self._db.flush()

        if head is not None:
            moved = self._db.query(FactKeyHead).filter(
                FactKeyHead.id == head.id,
                FactKeyHead.current_fact_id == previous_id,
            ).update(
                {
                    FactKeyHead.current_fact_id: fact.id,
                    FactKeyHead.version: FactKeyHead.version + 1,
                    FactKeyHead.updated_at: now,
                },
                synchronize_session=False,
            )
            if moved == 0:
                raise StalePreview(f"Head for fact {previous_id} moved concurrently")

        retired = self._db.query(Fact).filter(
            Fact.id == previous_id,
            Fact.superseded_by.is_(None),
        ).update(
            {Fact.superseded_by: fact.id, Fact.valid_until: now},
            synchronize_session=False,
        )
        if retired == 0:
            raise StalePreview(f"Fact {previous_id} was superseded concurrently")
        # Bulk update bypassed the identity map
        self._db.expire(previous)
