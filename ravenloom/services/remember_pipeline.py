"""
Remember pipeline: two-phase Preview -> Confirm/Cancel write protocol.

A preview extracts candidate facts and judges them against current knowledge
without touching the fact tables. It is persisted in ``remember_previews`` in
the ``drafting`` state with an expiry so that any worker can confirm it.

Confirm claims the preview with a guarded ``drafting -> confirmed`` update and
materializes the facts in the same transaction, so a preview is confirmed
exactly once and a failed confirm leaves no facts behind.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from ravenloom.errors import (
    InvalidPreviewState,
    KnowledgeError,
    NotFound,
    PreviewExpired,
    UnresolvedContradiction,
)
from ravenloom.knowledge.conflicts import ConflictDetector, normalize_value
from ravenloom.knowledge.types import (
    ConflictType,
    ContradictionDecision,
    ExtractedFact,
    FactConflict,
    FactSource,
    Resolution,
)
from ravenloom.llm.base import KnowledgeLLM
from ravenloom.models import (
    Fact,
    FactSourceType,
    PreviewState,
    RememberPreviewRecord,
    ensure_utc,
    get_current_utc_time,
)
from ravenloom.observability.metrics import remember_confirms_total, remember_previews_total
from ravenloom.routing.intent import classify_statement
from ravenloom.settings import Settings, get_settings
from ravenloom.stores.fact_store import FactStore
from ravenloom.stores.scope_store import ScopeTree

logger = logging.getLogger(__name__)


@dataclass
class RememberPreview:
    preview_id: uuid.UUID
    team_id: uuid.UUID
    scope_id: uuid.UUID
    source_text: str
    source_url: Optional[str]
    extracted_facts: List[ExtractedFact]
    conflicts: List[FactConflict]
    is_mismatch: bool
    mismatch_suggestion: Optional[str]
    state: PreviewState
    expires_at: datetime

    @classmethod
    def from_record(cls, record: RememberPreviewRecord) -> "RememberPreview":
        """Rebuild the preview, validating the stored JSON payloads."""
        return cls(
            preview_id=record.id,
            team_id=record.team_id,
            scope_id=record.scope_id,
            source_text=record.source_text,
            source_url=record.source_url,
            extracted_facts=[ExtractedFact.model_validate(f) for f in record.extracted_facts or []],
            conflicts=[FactConflict.model_validate(c) for c in record.conflicts or []],
            is_mismatch=record.is_mismatch,
            mismatch_suggestion=record.mismatch_suggestion,
            state=record.state,
            expires_at=ensure_utc(record.expires_at),
        )


@dataclass
class RememberResult:
    success: bool
    preview_id: uuid.UUID
    message: str
    facts_created: List[Fact] = field(default_factory=list)
    facts_updated: List[Fact] = field(default_factory=list)
    facts_unchanged: List[Fact] = field(default_factory=list)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class RememberPipeline:
    """
    Preview, confirm and cancel Remember statements.

    Args:
        db: SQLAlchemy session
        llm: Capability used for fact extraction
        settings: Optional settings override (TTL, thresholds)
    """

    def __init__(self, db: Session, llm: KnowledgeLLM, settings: Optional[Settings] = None):
        self._db = db
        self._llm = llm
        self._settings = settings or get_settings()
        self._scopes = ScopeTree(db)
        self._facts = FactStore(db)
        self._detector = ConflictDetector(
            db,
            duplicate_threshold=self._settings.duplicate_similarity_threshold,
            update_threshold=self._settings.update_overlap_threshold,
        )

    def preview(
        self,
        scope_id: uuid.UUID,
        statement: str,
        user_id: uuid.UUID,
        source_url: Optional[str] = None,
    ) -> RememberPreview:
        """
        Extract candidate facts and detect conflicts, without writing facts.

        Raises:
            NotFound: Scope does not exist
            PermissionDenied: Scope is another user's private scope
            LLMUnavailable: Extraction failed; nothing is persisted
        """
        statement = statement.strip()
        scope = self._scopes.require_accessible(scope_id, user_id)
        intent = classify_statement(statement)

        extracted = self._prepare(self._llm.extract_facts(statement))
        conflicts: List[FactConflict] = []
        for index, candidate in enumerate(extracted):
            conflicts.extend(self._detector.detect(scope.id, candidate, index, statement))

        now = get_current_utc_time()
        record = RememberPreviewRecord(
            team_id=scope.team_id,
            scope_id=scope.id,
            created_by=user_id,
            source_text=statement,
            source_url=source_url,
            extracted_facts=[f.model_dump(mode="json") for f in extracted],
            conflicts=[c.model_dump(mode="json") for c in conflicts],
            is_mismatch=intent.is_question,
            mismatch_suggestion=intent.suggestion,
            state=PreviewState.drafting,
            expires_at=now + timedelta(seconds=self._settings.preview_ttl_seconds),
        )
        self._db.add(record)
        self._db.commit()
        self._db.refresh(record)

        remember_previews_total.labels(mismatch=str(intent.is_question).lower()).inc()
        logger.info(
            "Preview %s in scope %s: %d facts, %d conflicts",
            record.id,
            scope.id,
            len(extracted),
            len(conflicts),
        )
        return RememberPreview.from_record(record)

    def get_preview(self, preview_id: uuid.UUID, user_id: uuid.UUID) -> RememberPreview:
        record = self._require(preview_id)
        self._scopes.require_accessible(record.scope_id, user_id)
        return RememberPreview.from_record(record)

    def confirm(
        self,
        preview_id: uuid.UUID,
        user_id: uuid.UUID,
        skip_conflict_ids: Optional[Iterable[uuid.UUID]] = None,
        decisions: Optional[Mapping[uuid.UUID, ContradictionDecision]] = None,
    ) -> RememberResult:
        """
        Materialize a drafting preview.

        Facts with a conflict whose existing fact id is in ``skip_conflict_ids``
        are left out. Contradictions need an entry in ``decisions`` keyed by the
        existing fact id; a decision also overrides the default handling of
        duplicates and updates.

        Raises:
            NotFound: Unknown preview
            InvalidPreviewState: Preview is confirmed, cancelled, or was
                confirmed concurrently
            PreviewExpired: Preview outlived its TTL
            UnresolvedContradiction: A contradiction has no decision
            StalePreview: Knowledge changed since the preview was taken
        """
        record = self._require(preview_id)
        scope = self._scopes.require_accessible(record.scope_id, user_id)

        if record.state != PreviewState.drafting:
            remember_confirms_total.labels(outcome="invalid_state").inc()
            raise InvalidPreviewState(f"Preview {preview_id} is already {record.state.value}")
        now = get_current_utc_time()
        if ensure_utc(record.expires_at) <= now:
            remember_confirms_total.labels(outcome="expired").inc()
            raise PreviewExpired(f"Preview {preview_id} expired at {record.expires_at}")

        preview = RememberPreview.from_record(record)
        plan = self._plan(preview, set(skip_conflict_ids or ()), dict(decisions or {}))

        try:
            claimed = self._db.query(RememberPreviewRecord).filter(
                RememberPreviewRecord.id == preview_id,
                RememberPreviewRecord.state == PreviewState.drafting,
            ).update(
                {
                    RememberPreviewRecord.state: PreviewState.confirmed,
                    RememberPreviewRecord.resolved_at: now,
                },
                synchronize_session=False,
            )
            if claimed == 0:
                raise InvalidPreviewState(f"Preview {preview_id} was resolved concurrently")

            result = self._facts.materialize(
                scope,
                plan,
                created_by=user_id,
                source=FactSource(
                    source_type=FactSourceType.user_statement,
                    source_id=str(preview_id),
                    source_url=preview.source_url,
                ),
            )
            self._db.commit()
        except KnowledgeError as exc:
            self._db.rollback()
            remember_confirms_total.labels(outcome=exc.code).inc()
            logger.warning("Confirm of preview %s failed: %s", preview_id, exc.message)
            raise
        except Exception:
            self._db.rollback()
            remember_confirms_total.labels(outcome="error").inc()
            raise

        remember_confirms_total.labels(outcome="confirmed").inc()
        message = (
            f"Remembered {_plural(len(result.created), 'new fact')}, "
            f"updated {len(result.updated)}, "
            f"{len(result.existing)} already known"
        )
        logger.info("Confirmed preview %s: %s", preview_id, message)
        return RememberResult(
            success=True,
            preview_id=preview_id,
            message=message,
            facts_created=result.created,
            facts_updated=result.updated,
            facts_unchanged=result.existing,
        )

    def cancel(self, preview_id: uuid.UUID, user_id: uuid.UUID) -> RememberPreview:
        """Cancel a drafting preview; terminal previews are returned unchanged."""
        record = self._require(preview_id)
        self._scopes.require_accessible(record.scope_id, user_id)

        if record.state == PreviewState.drafting:
            cancelled = self._db.query(RememberPreviewRecord).filter(
                RememberPreviewRecord.id == preview_id,
                RememberPreviewRecord.state == PreviewState.drafting,
            ).update(
                {
                    RememberPreviewRecord.state: PreviewState.cancelled,
                    RememberPreviewRecord.resolved_at: get_current_utc_time(),
                },
                synchronize_session=False,
            )
            self._db.commit()
            if cancelled:
                logger.info("Cancelled preview %s", preview_id)
            else:
                logger.info("Preview %s was resolved before cancel", preview_id)
            self._db.refresh(record)

        return RememberPreview.from_record(record)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete drafting previews past their expiry. Returns the number removed."""
        now = now or get_current_utc_time()
        removed = self._db.query(RememberPreviewRecord).filter(
            RememberPreviewRecord.state == PreviewState.drafting,
            RememberPreviewRecord.expires_at <= now,
        ).delete(synchronize_session=False)
        self._db.commit()
        if removed:
            logger.info("Purged %d expired previews", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, preview_id: uuid.UUID) -> RememberPreviewRecord:
        record = (
            self._db.query(RememberPreviewRecord)
            .filter(RememberPreviewRecord.id == preview_id)
            .first()
        )
        if record is None:
            raise NotFound("preview", preview_id)
        return record

    def _prepare(self, extracted: List[ExtractedFact]) -> List[ExtractedFact]:
        """Drop low-confidence candidates and repeats within one statement."""
        kept: List[ExtractedFact] = []
        seen = set()
        for candidate in extracted:
            if candidate.confidence < self._settings.min_extraction_confidence:
                continue
            marker = candidate.key or ("", normalize_value(candidate.content))
            if marker in seen:
                continue
            seen.add(marker)
            kept.append(candidate)
        return kept

    def _plan(
        self,
        preview: RememberPreview,
        skip_ids: set,
        decisions: Dict[uuid.UUID, ContradictionDecision],
    ) -> List[tuple]:
        by_index: Dict[int, List[FactConflict]] = defaultdict(list)
        for conflict in preview.conflicts:
            by_index[conflict.extracted_index].append(conflict)

        plan = []
        unresolved: List[uuid.UUID] = []
        for index, candidate in enumerate(preview.extracted_facts):
            conflicts = by_index.get(index, [])
            if any(c.existing_fact_id in skip_ids for c in conflicts):
                plan.append((candidate, Resolution.skip()))
                continue
            plan.append((candidate, self._resolve(conflicts, decisions, unresolved)))

        if unresolved:
            raise UnresolvedContradiction(
                f"{_plural(len(unresolved), 'contradiction')} need a decision "
                "(accept_new, keep_old or skip)",
                existing_fact_ids=unresolved,
            )
        return plan

    @staticmethod
    def _resolve(
        conflicts: List[FactConflict],
        decisions: Dict[uuid.UUID, ContradictionDecision],
        unresolved: List[uuid.UUID],
    ) -> Resolution:
        for conflict in conflicts:
            decision = decisions.get(conflict.existing_fact_id)
            if decision is None:
                continue
            if decision == ContradictionDecision.accept_new:
                return Resolution.supersede(conflict.existing_fact_id)
            if decision == ContradictionDecision.keep_old:
                return Resolution.keep_existing(conflict.existing_fact_id)
            return Resolution.skip()

        for conflict_type in (ConflictType.duplicate, ConflictType.contradiction, ConflictType.update):
            matching = [c for c in conflicts if c.conflict_type == conflict_type]
            if not matching:
                continue
            first = matching[0]
            if conflict_type == ConflictType.duplicate:
                return Resolution.keep_existing(first.existing_fact_id)
            if conflict_type == ConflictType.contradiction:
                unresolved.extend(c.existing_fact_id for c in matching)
                return Resolution.skip()
            return Resolution.supersede(first.existing_fact_id)

        return Resolution.create()
