"""
Shared fixtures for the knowledge core tests.

Provides:
- In-memory SQLite engine/session (StaticPool so every connection sees the same DB)
- File-backed SQLite sessions for two-worker race tests
- A scripted FakeKnowledgeLLM that records its calls
- Team/user ids and a TestClient wired to the fakes
"""
import os
import uuid
from collections import deque
from typing import Dict, Generator, List

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import ravenloom.models  # noqa: E402,F401
from ravenloom.database import Base  # noqa: E402
from ravenloom.knowledge.types import ExtractedFact  # noqa: E402
from ravenloom.llm.base import AnswerDraft, NextStep  # noqa: E402
from ravenloom.settings import Settings  # noqa: E402
from ravenloom.stores import ScopeTree  # noqa: E402

TEAM_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_TEAM_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
USER_A_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
USER_B_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")


class FakeKnowledgeLLM:
    """
    Deterministic KnowledgeLLM.

    Extraction returns scripted facts per statement, otherwise one free-text
    fact carrying the statement. Other methods pop scripted values and fall
    back to numbered defaults. ``failures`` maps a method name to the
    exception it raises.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.extractions: Dict[str, List[ExtractedFact]] = {}
        self.answer = AnswerDraft(answer="Nothing is recorded about that.", confidence=0.2)
        self.summary = "Covers the team's API conventions."
        self.follow_ups: deque = deque()
        self.next_steps: deque = deque()
        self.replacements: deque = deque()
        self.failures: Dict[str, Exception] = {}
        self._counter = 0

    def script_extraction(self, statement: str, *facts: dict) -> None:
        self.extractions[statement] = [ExtractedFact(**fact) for fact in facts]

    def _record(self, method: str, *args):
        self.calls.append((method, args))
        if method in self.failures:
            raise self.failures[method]

    def _next_number(self) -> int:
        self._counter += 1
        return self._counter

    def calls_to(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def extract_facts(self, statement):
        self._record("extract_facts", statement)
        if statement in self.extractions:
            return [fact.model_copy() for fact in self.extractions[statement]]
        return [ExtractedFact(content=statement, category="general", confidence=0.9)]

    def answer_question(self, question, facts):
        self._record("answer_question", question, list(facts))
        return self.answer

    def summarize(self, scope_name, facts):
        self._record("summarize", scope_name, list(facts))
        return self.summary

    def generate_follow_up(self, question, answer, context=None):
        self._record("generate_follow_up", question, answer, context)
        if self.follow_ups:
            return self.follow_ups.popleft()
        return f"Follow-up {self._next_number()}: what else about {question}"

    def generate_learning_questions(self, objective, history, count, is_initial=False):
        self._record("generate_learning_questions", objective, list(history), count, is_initial)
        return [f"Question {self._next_number()} about {objective.title}?" for _ in range(count)]

    def decide_next_step(self, objective, answered, history, can_ask_more):
        self._record("decide_next_step", objective, answered, list(history), can_ask_more)
        if self.next_steps:
            return self.next_steps.popleft()
        return NextStep(action="new_question", question=f"Next question {self._next_number()}?")

    def generate_replacement(self, objective, rejected_question, reason, previously_rejected, history):
        self._record(
            "generate_replacement",
            objective,
            rejected_question,
            reason,
            list(previously_rejected),
            list(history),
        )
        if self.replacements:
            return self.replacements.popleft()
        return f"Replacement question {self._next_number()}?"


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults, isolated from any local .env file."""
    return Settings(_env_file=None, database_url_override="sqlite://")


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across connections."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """
    File-backed SQLite for race tests.

    Each session gets its own connection, so one session can hold stale
    identity-map state while the other commits.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def fake_llm() -> FakeKnowledgeLLM:
    return FakeKnowledgeLLM()


@pytest.fixture
def team_root(db):
    return ScopeTree(db).initialize_team_scopes(TEAM_ID, "Acme", created_by=USER_A_ID)


@pytest.fixture
def project_scope(db, team_root):
    return ScopeTree(db).create_scope(TEAM_ID, "Platform", created_by=USER_A_ID)


@pytest.fixture
def client(session_factory, fake_llm, settings):
    """TestClient with the database, LLM and settings dependencies overridden."""
    from fastapi.testclient import TestClient

    from main import app
    from ravenloom.database import get_db
    from ravenloom.dependencies import get_llm_dependency, get_settings_dependency

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_llm_dependency] = lambda: fake_llm
    app.dependency_overrides[get_settings_dependency] = lambda: settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
