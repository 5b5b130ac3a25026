"""
Tests for the fact store: materialization, supersession heads, history and reads.
"""
import uuid

import pytest

from ravenloom.errors import NotFound, StalePreview
from ravenloom.knowledge.types import ExtractedFact, FactSource, Resolution
from ravenloom.models import Fact, FactKeyHead
from ravenloom.stores import FactFilters, FactStore, ScopeTree

USER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")


def _rate_limit(value):
    return ExtractedFact(
        content=f"The API rate limit is {value}",
        entity_type="service",
        entity_name="API",
        attribute="rate limit",
        value=value,
        category="technical",
    )


def _apply(db, scope, fact, resolution):
    result = FactStore(db).materialize(scope, [(fact, resolution)], USER_ID)
    db.commit()
    return result


def _current_for_rate_limit(db, scope):
    return FactStore(db).current_for_key(scope.id, "api", "rate limit")


class TestMaterialize:
    def test_create_structured_fact_sets_head(self, db, project_scope):
        result = _apply(db, project_scope, _rate_limit("100/min"), Resolution.create())

        fact = result.created[0]
        head = FactStore(db).head(project_scope.id, "api", "rate limit")
        assert head.current_fact_id == fact.id
        assert head.version == 1
        assert fact.entity_key == "api"
        assert fact.attribute_key == "rate limit"
        assert fact.team_id == project_scope.team_id
        assert fact.created_by == USER_ID

    def test_source_provenance_is_stamped(self, db, project_scope):
        source = FactSource(source_id="preview-1", source_url="https://wiki.example.com/api")
        result = FactStore(db).materialize(
            project_scope, [(ExtractedFact(content="Deploys on Tuesdays"), Resolution.create())],
            USER_ID, source=source,
        )
        db.commit()

        fact = result.created[0]
        assert fact.source_id == "preview-1"
        assert fact.source_url == "https://wiki.example.com/api"

    def test_supersede_keeps_exactly_one_current_fact(self, db, project_scope):
        first = _apply(db, project_scope, _rate_limit("100/min"), Resolution.create()).created[0]

        second = _apply(
            db, project_scope, _rate_limit("200/min"), Resolution.supersede(first.id)
        ).updated[0]

        db.refresh(first)
        assert first.superseded_by == second.id
        assert first.valid_until is not None
        assert not first.is_current()
        assert [f.id for f in _current_for_rate_limit(db, project_scope)] == [second.id]

        head = FactStore(db).head(project_scope.id, "api", "rate limit")
        assert head.current_fact_id == second.id
        assert head.version == 2
        assert db.query(FactKeyHead).count() == 1

    def test_supersede_of_retired_fact_is_stale(self, db, project_scope):
        first = _apply(db, project_scope, _rate_limit("100/min"), Resolution.create()).created[0]
        _apply(db, project_scope, _rate_limit("200/min"), Resolution.supersede(first.id))

        with pytest.raises(StalePreview):
            FactStore(db).materialize(
                project_scope, [(_rate_limit("300/min"), Resolution.supersede(first.id))], USER_ID
            )
        db.rollback()

        assert [f.value for f in _current_for_rate_limit(db, project_scope)] == ["200/min"]

    def test_create_on_key_with_head_is_stale(self, db, project_scope):
        _apply(db, project_scope, _rate_limit("100/min"), Resolution.create())

        with pytest.raises(StalePreview):
            FactStore(db).materialize(project_scope, [(_rate_limit("50/min"), Resolution.create())], USER_ID)
        db.rollback()

        assert db.query(Fact).count() == 1

    def test_keep_existing_requires_current_fact(self, db, project_scope):
        first = _apply(db, project_scope, _rate_limit("100/min"), Resolution.create()).created[0]

        result = _apply(db, project_scope, _rate_limit("100/min"), Resolution.keep_existing(first.id))
        assert [f.id for f in result.existing] == [first.id]

        FactStore(db).invalidate(first.id)
        with pytest.raises(StalePreview):
            FactStore(db).materialize(
                project_scope, [(_rate_limit("100/min"), Resolution.keep_existing(first.id))], USER_ID
            )

    def test_skip_writes_nothing(self, db, project_scope):
        result = _apply(db, project_scope, _rate_limit("100/min"), Resolution.skip())

        assert result.facts == []
        assert db.query(Fact).count() == 0


class TestHistory:
    def test_structured_history_oldest_first(self, db, project_scope):
        first = _apply(db, project_scope, _rate_limit("100/min"), Resolution.create()).created[0]
        second = _apply(db, project_scope, _rate_limit("200/min"), Resolution.supersede(first.id)).updated[0]
        third = _apply(db, project_scope, _rate_limit("300/min"), Resolution.supersede(second.id)).updated[0]

        history = FactStore(db).history(second.id)

        assert [f.id for f in history] == [first.id, second.id, third.id]

    def test_free_text_history_follows_links(self, db, project_scope):
        first = _apply(
            db, project_scope, ExtractedFact(content="Deploys happen on Tuesdays"), Resolution.create()
        ).created[0]
        second = _apply(
            db, project_scope, ExtractedFact(content="Deploys happen on Thursdays"),
            Resolution.supersede(first.id),
        ).updated[0]

        assert [f.id for f in FactStore(db).history(first.id)] == [first.id, second.id]
        assert [f.id for f in FactStore(db).history(second.id)] == [first.id, second.id]

    def test_history_of_unknown_fact(self, db):
        with pytest.raises(NotFound):
            FactStore(db).history(uuid.uuid4())


class TestInvalidate:
    def test_invalidate_removes_current_fact_and_head(self, db, project_scope):
        fact = _apply(db, project_scope, _rate_limit("100/min"), Resolution.create()).created[0]
        store = FactStore(db)

        invalidated = store.invalidate(fact.id, USER_ID)

        assert invalidated.valid_until is not None
        assert store.head(project_scope.id, "api", "rate limit") is None
        assert store.query([project_scope.id]) == []
        assert store.invalidate(fact.id).id == fact.id

    def test_key_can_be_recreated_after_invalidate(self, db, project_scope):
        fact = _apply(db, project_scope, _rate_limit("100/min"), Resolution.create()).created[0]
        FactStore(db).invalidate(fact.id)

        again = _apply(db, project_scope, _rate_limit("150/min"), Resolution.create()).created[0]

        assert FactStore(db).head(project_scope.id, "api", "rate limit").current_fact_id == again.id


class TestReads:
    def test_query_is_limited_to_given_scopes(self, db, team_root, project_scope):
        child = ScopeTree(db).create_scope(team_root.team_id, "API", parent_scope_id=project_scope.id)
        _apply(db, team_root, ExtractedFact(content="Office is in Berlin"), Resolution.create())
        _apply(db, child, ExtractedFact(content="API uses OAuth"), Resolution.create())
        store = FactStore(db)

        assert [f.content for f in store.query([project_scope.id])] == []
        assert [f.content for f in store.query([child.id])] == ["API uses OAuth"]
        assert len(store.query([team_root.id, child.id])) == 2
        assert store.query([]) == []

    def test_query_filters(self, db, project_scope):
        _apply(db, project_scope, _rate_limit("100/min"), Resolution.create())
        _apply(
            db, project_scope,
            ExtractedFact(content="Standup is at 9:30", category="process"),
            Resolution.create(),
        )
        store = FactStore(db)

        assert [f.category for f in store.query([project_scope.id], FactFilters(category="process"))] == [
            "process"
        ]
        assert len(store.query([project_scope.id], FactFilters(entity_name="api"))) == 1
        assert len(store.query([project_scope.id], FactFilters(attribute="RATE LIMIT"))) == 1
        assert len(store.query([project_scope.id], FactFilters(text="standup"))) == 1

    def test_search_ranks_by_matching_terms(self, db, project_scope):
        _apply(db, project_scope, ExtractedFact(content="The API gateway runs on Kubernetes"), Resolution.create())
        _apply(db, project_scope, _rate_limit("100/min"), Resolution.create())
        _apply(db, project_scope, ExtractedFact(content="Lunch is at noon"), Resolution.create())

        results = FactStore(db).search([project_scope.id], "What is the API rate limit?")

        assert results[0].value == "100/min"
        assert "Lunch is at noon" not in [f.content for f in results]

    def test_search_falls_back_to_recent_facts(self, db, project_scope):
        _apply(db, project_scope, ExtractedFact(content="Lunch is at noon"), Resolution.create())

        results = FactStore(db).search([project_scope.id], "xyzzy?", fallback_limit=5)

        assert [f.content for f in results] == ["Lunch is at noon"]
