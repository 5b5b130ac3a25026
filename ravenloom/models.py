import datetime
import enum
import uuid

import sqlalchemy as sa
from sqlalchemy import (
    JSON,
    Uuid,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ravenloom.database import Base


def get_current_utc_time():
    """Get current UTC time"""
    return datetime.datetime.now(datetime.UTC)


def ensure_utc(value):
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=datetime.UTC)


class ScopeType(enum.Enum):
    team = "team"
    project = "project"
    private = "private"


class FactSourceType(enum.Enum):
    conversation = "conversation"
    document = "document"
    manual = "manual"
    integration = "integration"
    user_statement = "user_statement"


class PreviewState(enum.Enum):
    """Remember preview lifecycle: drafting -> confirmed | cancelled."""
    drafting = "drafting"
    confirmed = "confirmed"
    cancelled = "cancelled"


class QuestionStatus(enum.Enum):
    open = "open"
    answered = "answered"
    closed = "closed"


class ObjectiveStatus(enum.Enum):
    active = "active"
    paused = "paused"
    completed = "completed"


class Scope(Base):
    __tablename__ = "scopes"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    team_id = Column(Uuid, nullable=False, index=True)
    parent_scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=True, index=True)
    scope_type = Column(Enum(ScopeType), nullable=False, default=ScopeType.project)
    owner_id = Column(Uuid, nullable=True, index=True)
    coupled_scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    # Equals team_id on the team root only; unique, so a team has one root.
    root_team_id = Column(Uuid, nullable=True, unique=True)
    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), default=get_current_utc_time, index=True)
    updated_at = Column(DateTime(timezone=True),
                        default=get_current_utc_time,
                        onupdate=get_current_utc_time)

    @property
    def is_private(self) -> bool:
        return self.scope_type == ScopeType.private


class PrivateScopeLink(Base):
    """Coupling relation: (owner, public scope) -> that owner's private scope."""
    __tablename__ = "private_scope_links"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    team_id = Column(Uuid, nullable=False, index=True)
    owner_id = Column(Uuid, nullable=False)
    coupled_scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=False, index=True)
    private_scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=get_current_utc_time)

    __table_args__ = (
        sa.UniqueConstraint("owner_id", "coupled_scope_id", name="uq_private_scope_owner_coupled"),
    )


class Fact(Base):
    __tablename__ = "facts"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    team_id = Column(Uuid, nullable=False, index=True)
    scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_name = Column(String, nullable=True)
    attribute = Column(String, nullable=True)
    value = Column(Text, nullable=True)
    # Normalized key columns, NULL for free-text facts
    entity_key = Column(String, nullable=True)
    attribute_key = Column(String, nullable=True)
    category = Column(String, nullable=True, index=True)
    confidence_score = Column(Float, nullable=False, default=1.0)
    source_type = Column(Enum(FactSourceType), nullable=False, default=FactSourceType.user_statement)
    source_id = Column(String, nullable=True)
    source_quote = Column(Text, nullable=True)
    source_url = Column(String, nullable=True)
    created_by = Column(Uuid, nullable=True)
    valid_from = Column(DateTime(timezone=True), default=get_current_utc_time, nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    superseded_by = Column(Uuid, ForeignKey("facts.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=get_current_utc_time, index=True)

    __table_args__ = (
        Index("idx_fact_scope_key", "scope_id", "entity_key", "attribute_key"),
        Index("idx_fact_scope_current", "scope_id", "superseded_by", "valid_until"),
        sa.CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_fact_confidence_range",
        ),
    )

    @property
    def is_structured(self) -> bool:
        return bool(self.entity_key and self.attribute_key)

    def is_current(self, now=None) -> bool:
        if self.superseded_by is not None:
            return False
        if self.valid_until is None:
            return True
        return ensure_utc(self.valid_until) > (now or get_current_utc_time())


class FactKeyHead(Base):
    """Index to the current head of a (scope, entity, attribute) supersession log."""
    __tablename__ = "fact_key_heads"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=False)
    entity_key = Column(String, nullable=False)
    attribute_key = Column(String, nullable=False)
    current_fact_id = Column(Uuid, ForeignKey("facts.id"), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True),
                        default=get_current_utc_time,
                        onupdate=get_current_utc_time)

    __table_args__ = (
        sa.UniqueConstraint("scope_id", "entity_key", "attribute_key", name="uq_fact_key_head"),
    )


class RememberPreviewRecord(Base):
    __tablename__ = "remember_previews"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    team_id = Column(Uuid, nullable=False, index=True)
    scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=False, index=True)
    created_by = Column(Uuid, nullable=False)
    source_text = Column(Text, nullable=False)
    source_url = Column(String, nullable=True)
    extracted_facts = Column(JSON, nullable=False, default=list)
    conflicts = Column(JSON, nullable=False, default=list)
    is_mismatch = Column(Boolean, nullable=False, default=False)
    mismatch_suggestion = Column(String, nullable=True)
    state = Column(Enum(PreviewState), nullable=False, default=PreviewState.drafting, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=get_current_utc_time)
    resolved_at = Column(DateTime(timezone=True), nullable=True)


class TeamQuestion(Base):
    __tablename__ = "team_questions"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    team_id = Column(Uuid, nullable=False, index=True)
    scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=True, index=True)
    asked_by = Column(Uuid, nullable=True)
    asked_by_raven = Column(Boolean, nullable=False, default=False)
    question = Column(Text, nullable=False)
    ai_answer = Column(Text, nullable=True)
    ai_confidence = Column(Float, nullable=False, default=0.0)
    status = Column(Enum(QuestionStatus), nullable=False, default=QuestionStatus.open)
    answer = Column(Text, nullable=True)
    answered_by = Column(Uuid, nullable=True)
    answered_at = Column(DateTime(timezone=True), nullable=True)
    parent_question_id = Column(Uuid, ForeignKey("team_questions.id"), nullable=True, index=True)
    learning_objective_id = Column(
        Uuid, ForeignKey("learning_objectives.id"), nullable=True, index=True
    )
    context = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=get_current_utc_time, index=True)
    updated_at = Column(DateTime(timezone=True),
                        default=get_current_utc_time,
                        onupdate=get_current_utc_time)

    assignees = relationship(
        "QuestionAssignee",
        back_populates="question",
        cascade="all, delete-orphan",
        order_by="QuestionAssignee.assigned_at",
    )

    __table_args__ = (
        Index("idx_team_question_status", "team_id", "status"),
    )


class QuestionAssignee(Base):
    __tablename__ = "question_assignees"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    question_id = Column(Uuid, ForeignKey("team_questions.id"), nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)
    assigned_by = Column(Uuid, nullable=True)
    assigned_at = Column(DateTime(timezone=True), default=get_current_utc_time)

    question = relationship("TeamQuestion", back_populates="assignees")

    __table_args__ = (
        sa.UniqueConstraint("question_id", "user_id", name="uq_question_assignee"),
    )


class LearningObjective(Base):
    __tablename__ = "learning_objectives"
    id = Column(Uuid, primary_key=True, default=lambda: uuid.uuid4())
    team_id = Column(Uuid, nullable=False, index=True)
    scope_id = Column(Uuid, ForeignKey("scopes.id"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(ObjectiveStatus), nullable=False, default=ObjectiveStatus.active)
    # NULL means Raven drives the objective
    assigned_to = Column(Uuid, nullable=True, index=True)
    created_by = Column(Uuid, nullable=True)
    max_questions = Column(Integer, nullable=False, default=20)
    questions_asked = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=get_current_utc_time, index=True)
    updated_at = Column(DateTime(timezone=True),
                        default=get_current_utc_time,
                        onupdate=get_current_utc_time)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("questions_asked <= max_questions", name="ck_objective_budget"),
        Index("idx_objective_team_status", "team_id", "status"),
    )

    @property
    def is_raven_driven(self) -> bool:
        return self.assigned_to is None
