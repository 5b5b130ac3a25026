"""
Tests for the Remember pipeline: preview, confirm, cancel and expiry.
"""
import uuid
from datetime import timedelta

import pytest

from ravenloom.errors import (
    InvalidPreviewState,
    LLMUnavailable,
    NotFound,
    PermissionDenied,
    PreviewExpired,
    StalePreview,
    UnresolvedContradiction,
)
from ravenloom.knowledge.types import ConflictType, ContradictionDecision
from ravenloom.models import Fact, PreviewState, RememberPreviewRecord, get_current_utc_time
from ravenloom.services.remember_pipeline import RememberPipeline
from ravenloom.stores import FactStore, ScopeTree

USER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER_USER_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")

RATE_LIMIT_STATEMENT = "Our API rate limit is 100/min"


def _rate_limit(value, confidence=0.95):
    return {
        "content": f"The API rate limit is {value}",
        "entity_type": "service",
        "entity_name": "API",
        "attribute": "rate limit",
        "value": value,
        "category": "technical",
        "confidence": confidence,
    }


@pytest.fixture
def pipeline(db, fake_llm, settings):
    fake_llm.script_extraction(RATE_LIMIT_STATEMENT, _rate_limit("100/min"))
    return RememberPipeline(db, fake_llm, settings)


def _remember_rate_limit(pipeline, scope):
    preview = pipeline.preview(scope.id, RATE_LIMIT_STATEMENT, USER_ID)
    return pipeline.confirm(preview.preview_id, USER_ID)


def _current_values(db, scope):
    return [f.value for f in FactStore(db).current_for_key(scope.id, "api", "rate limit")]


class TestPreview:
    def test_preview_writes_no_facts(self, db, pipeline, project_scope, settings):
        preview = pipeline.preview(project_scope.id, RATE_LIMIT_STATEMENT, USER_ID)

        assert preview.state == PreviewState.drafting
        assert preview.team_id == project_scope.team_id
        assert preview.is_mismatch is False
        assert preview.conflicts == []
        assert [f.value for f in preview.extracted_facts] == ["100/min"]
        remaining = preview.expires_at - get_current_utc_time()
        assert timedelta(seconds=settings.preview_ttl_seconds - 60) < remaining
        assert db.query(Fact).count() == 0

    def test_question_shaped_statement_is_flagged(self, pipeline, project_scope):
        preview = pipeline.preview(project_scope.id, "What is our API rate limit?", USER_ID)

        assert preview.is_mismatch is True
        assert "Ask" in preview.mismatch_suggestion

    def test_low_confidence_and_repeated_candidates_are_dropped(self, pipeline, fake_llm, project_scope):
        statement = "API rate limit is 100/min, and lunch might be at noon"
        fake_llm.script_extraction(
            statement,
            _rate_limit("100/min"),
            _rate_limit("100/min"),
            {"content": "Lunch might be at noon", "confidence": 0.3},
        )

        preview = pipeline.preview(project_scope.id, statement, USER_ID)

        assert [f.content for f in preview.extracted_facts] == ["The API rate limit is 100/min"]

    def test_llm_failure_persists_nothing(self, db, pipeline, fake_llm, project_scope):
        fake_llm.failures["extract_facts"] = LLMUnavailable("model timed out")

        with pytest.raises(LLMUnavailable):
            pipeline.preview(project_scope.id, RATE_LIMIT_STATEMENT, USER_ID)

        assert db.query(RememberPreviewRecord).count() == 0

    def test_private_scope_of_other_user_is_denied(self, db, pipeline, team_root, project_scope):
        private = ScopeTree(db).get_or_create_private_scope(team_root.team_id, USER_ID, project_scope.id)

        with pytest.raises(PermissionDenied):
            pipeline.preview(private.id, RATE_LIMIT_STATEMENT, OTHER_USER_ID)

    def test_unknown_scope(self, pipeline):
        with pytest.raises(NotFound):
            pipeline.preview(uuid.uuid4(), RATE_LIMIT_STATEMENT, USER_ID)

    def test_preview_is_readable_by_id(self, pipeline, project_scope):
        preview = pipeline.preview(project_scope.id, RATE_LIMIT_STATEMENT, USER_ID)

        loaded = pipeline.get_preview(preview.preview_id, USER_ID)

        assert loaded.extracted_facts == preview.extracted_facts
        with pytest.raises(NotFound):
            pipeline.get_preview(uuid.uuid4(), USER_ID)


class TestConfirm:
    def test_confirm_creates_fact(self, db, pipeline, project_scope):
        result = _remember_rate_limit(pipeline, project_scope)

        assert result.success is True
        assert result.message == "Remembered 1 new fact, updated 0, 0 already known"
        fact = result.facts_created[0]
        assert fact.scope_id == project_scope.id
        assert fact.source_id == str(result.preview_id)
        assert fact.created_by == USER_ID
        assert _current_values(db, project_scope) == ["100/min"]

    def test_repeated_statement_is_a_duplicate(self, db, pipeline, project_scope):
        first = _remember_rate_limit(pipeline, project_scope)

        preview = pipeline.preview(project_scope.id, RATE_LIMIT_STATEMENT, USER_ID)
        assert [c.conflict_type for c in preview.conflicts] == [ConflictType.duplicate]
        assert preview.conflicts[0].existing_fact_id == first.facts_created[0].id

        result = pipeline.confirm(preview.preview_id, USER_ID)

        assert result.facts_created == []
        assert [f.id for f in result.facts_unchanged] == [first.facts_created[0].id]
        assert db.query(Fact).count() == 1

    def test_update_supersedes_previous_fact(self, db, pipeline, fake_llm, project_scope):
        _remember_rate_limit(pipeline, project_scope)
        statement = "The API rate limit increased to 200/min"
        fake_llm.script_extraction(statement, _rate_limit("200/min"))

        preview = pipeline.preview(project_scope.id, statement, USER_ID)
        assert [c.conflict_type for c in preview.conflicts] == [ConflictType.update]
        result = pipeline.confirm(preview.preview_id, USER_ID)

        assert len(result.facts_updated) == 1
        assert result.message == "Remembered 0 new facts, updated 1, 0 already known"
        assert _current_values(db, project_scope) == ["200/min"]

    def test_contradiction_needs_a_decision(self, db, pipeline, fake_llm, project_scope):
        original = _remember_rate_limit(pipeline, project_scope).facts_created[0]
        statement = "Our API rate limit is 50/min"
        fake_llm.script_extraction(statement, _rate_limit("50/min"))
        preview = pipeline.preview(project_scope.id, statement, USER_ID)
        assert [c.conflict_type for c in preview.conflicts] == [ConflictType.contradiction]

        with pytest.raises(UnresolvedContradiction) as excinfo:
            pipeline.confirm(preview.preview_id, USER_ID)

        assert excinfo.value.existing_fact_ids == [original.id]
        assert pipeline.get_preview(preview.preview_id, USER_ID).state == PreviewState.drafting
        assert _current_values(db, project_scope) == ["100/min"]

    @pytest.mark.parametrize(
        "decision, expected_values, updated, unchanged",
        [
            (ContradictionDecision.accept_new, ["50/min"], 1, 0),
            (ContradictionDecision.keep_old, ["100/min"], 0, 1),
            (ContradictionDecision.skip, ["100/min"], 0, 0),
        ],
    )
    def test_contradiction_decisions(
        self, db, pipeline, fake_llm, project_scope, decision, expected_values, updated, unchanged
    ):
        original = _remember_rate_limit(pipeline, project_scope).facts_created[0]
        statement = "Our API rate limit is 50/min"
        fake_llm.script_extraction(statement, _rate_limit("50/min"))
        preview = pipeline.preview(project_scope.id, statement, USER_ID)

        result = pipeline.confirm(preview.preview_id, USER_ID, decisions={original.id: decision})

        assert _current_values(db, project_scope) == expected_values
        assert len(result.facts_updated) == updated
        assert len(result.facts_unchanged) == unchanged

    def test_skip_conflict_ids_leave_facts_out(self, db, pipeline, fake_llm, project_scope):
        original = _remember_rate_limit(pipeline, project_scope).facts_created[0]
        statement = "Our API rate limit is 50/min"
        fake_llm.script_extraction(statement, _rate_limit("50/min"))
        preview = pipeline.preview(project_scope.id, statement, USER_ID)

        result = pipeline.confirm(preview.preview_id, USER_ID, skip_conflict_ids=[original.id])

        assert result.success is True
        assert result.facts_created == result.facts_updated == []
        assert _current_values(db, project_scope) == ["100/min"]

    def test_confirm_twice_is_rejected(self, db, pipeline, project_scope):
        preview = pipeline.preview(project_scope.id, RATE_LIMIT_STATEMENT, USER_ID)
        pipeline.confirm(preview.preview_id, USER_ID)

        with pytest.raises(InvalidPreviewState):
            pipeline.confirm(preview.preview_id, USER_ID)
        assert db.query(Fact).count() == 1

    def test_expired_preview(self, db, pipeline, project_scope):
        preview = pipeline.preview(project_scope.id, RATE_LIMIT_STATEMENT, USER_ID)
        record = db.query(RememberPreviewRecord).filter(RememberPreviewRecord.id == preview.preview_id).one()
        record.expires_at = get_current_utc_time() - timedelta(minutes=1)
        db.commit()

        with pytest.raises(PreviewExpired):
            pipeline.confirm(preview.preview_id, USER_ID)
        assert db.query(Fact).count() == 0

        assert pipeline.purge_expired() == 1
        assert db.query(RememberPreviewRecord).count() == 0

    def test_stale_preview_rolls_back(self, db, pipeline, fake_llm, project_scope):
        _remember_rate_limit(pipeline, project_scope)
        fake_llm.script_extraction("Rate limit is now 200/min", _rate_limit("200/min"))
        fake_llm.script_extraction("Rate limit is now 300/min", _rate_limit("300/min"))
        first = pipeline.preview(project_scope.id, "Rate limit is now 200/min", USER_ID)
        second = pipeline.preview(project_scope.id, "Rate limit is now 300/min", USER_ID)
        pipeline.confirm(first.preview_id, USER_ID)

        with pytest.raises(StalePreview):
            pipeline.confirm(second.preview_id, USER_ID)

        assert pipeline.get_preview(second.preview_id, USER_ID).state == PreviewState.drafting
        assert _current_values(db, project_scope) == ["200/min"]

    def test_source_url_is_kept(self, pipeline, project_scope):
        preview = pipeline.preview(
            project_scope.id, RATE_LIMIT_STATEMENT, USER_ID, source_url="https://wiki.example.com/limits"
        )

        result = pipeline.confirm(preview.preview_id, USER_ID)

        assert result.facts_created[0].source_url == "https://wiki.example.com/limits"

    def test_concurrent_confirm_materializes_once(self, file_session_factory, fake_llm, settings):
        fake_llm.script_extraction(RATE_LIMIT_STATEMENT, _rate_limit("100/min"))
        setup = file_session_factory()
        root = ScopeTree(setup).initialize_team_scopes(uuid.uuid4(), "Acme")
        preview_id = RememberPipeline(setup, fake_llm, settings).preview(
            root.id, RATE_LIMIT_STATEMENT, USER_ID
        ).preview_id
        setup.close()

        first_db, second_db = file_session_factory(), file_session_factory()
        try:
            first = RememberPipeline(first_db, fake_llm, settings)
            second = RememberPipeline(second_db, fake_llm, settings)
            # Both workers see the drafting preview before either claims it
            assert second.get_preview(preview_id, USER_ID).state == PreviewState.drafting

            first.confirm(preview_id, USER_ID)
            with pytest.raises(InvalidPreviewState):
                second.confirm(preview_id, USER_ID)
        finally:
            first_db.close()
            second_db.close()

        check = file_session_factory()
        try:
            assert check.query(Fact).count() == 1
        finally:
            check.close()


class TestCancel:
    def test_cancel_is_idempotent(self, pipeline, project_scope):
        preview = pipeline.preview(project_scope.id, RATE_LIMIT_STATEMENT, USER_ID)

        assert pipeline.cancel(preview.preview_id, USER_ID).state == PreviewState.cancelled
        assert pipeline.cancel(preview.preview_id, USER_ID).state == PreviewState.cancelled
        with pytest.raises(InvalidPreviewState):
            pipeline.confirm(preview.preview_id, USER_ID)

    def test_cancel_after_confirm_keeps_confirmed(self, pipeline, project_scope):
        result = _remember_rate_limit(pipeline, project_scope)

        assert pipeline.cancel(result.preview_id, USER_ID).state == PreviewState.confirmed
