from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ravenloom.knowledge.types import ContradictionDecision, ExtractedFact, FactConflict
from ravenloom.models import FactSourceType, ObjectiveStatus, PreviewState, QuestionStatus, ScopeType


class RequestModel(BaseModel):
    """Request bodies reject unknown fields instead of passing them through."""

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Scopes
# =============================================================================


class TeamScopesInit(RequestModel):
    team_name: str = Field(..., min_length=1, max_length=200)


class ScopeCreate(RequestModel):
    team_id: UUID
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    parent_scope_id: Optional[UUID] = None


class ScopeUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    # Only applied when present in the body
    parent_scope_id: Optional[UUID] = None


class PrivateScopeCreate(RequestModel):
    owner_name: Optional[str] = Field(default=None, max_length=200)


class Scope(BaseModel):
    id: UUID
    team_id: UUID
    parent_scope_id: Optional[UUID] = None
    scope_type: ScopeType
    owner_id: Optional[UUID] = None
    coupled_scope_id: Optional[UUID] = None
    name: str
    description: Optional[str] = None
    summary: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ScopeTreeNode(BaseModel):
    scope: Scope
    children: List["ScopeTreeNode"] = Field(default_factory=list)
    private_scope: Optional[Scope] = None

    model_config = ConfigDict(from_attributes=True)


class ScopePath(BaseModel):
    scope_id: UUID
    path: List[str]


class ScopeDeleted(BaseModel):
    deleted_scope_ids: List[UUID]


# =============================================================================
# Facts
# =============================================================================


class Fact(BaseModel):
    id: UUID
    team_id: UUID
    scope_id: UUID
    content: str
    entity_type: Optional[str] = None
    entity_name: Optional[str] = None
    attribute: Optional[str] = None
    value: Optional[str] = None
    category: Optional[str] = None
    confidence_score: float
    source_type: FactSourceType
    source_id: Optional[str] = None
    source_quote: Optional[str] = None
    source_url: Optional[str] = None
    created_by: Optional[UUID] = None
    valid_from: datetime
    valid_until: Optional[datetime] = None
    superseded_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Remember
# =============================================================================


class RememberPreviewRequest(RequestModel):
    scope_id: UUID
    statement: str = Field(..., min_length=1, max_length=10000)
    source_url: Optional[str] = Field(default=None, max_length=2000)


class RememberConfirmRequest(RequestModel):
    skip_conflict_ids: List[UUID] = Field(default_factory=list)
    decisions: Dict[UUID, ContradictionDecision] = Field(default_factory=dict)


class RememberPreview(BaseModel):
    preview_id: UUID
    team_id: UUID
    scope_id: UUID
    source_text: str
    source_url: Optional[str] = None
    extracted_facts: List[ExtractedFact]
    conflicts: List[FactConflict]
    is_mismatch: bool
    mismatch_suggestion: Optional[str] = None
    state: PreviewState
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RememberResult(BaseModel):
    success: bool
    preview_id: UUID
    message: str
    facts_created: List[Fact]
    facts_updated: List[Fact]
    facts_unchanged: List[Fact]

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Team questions
# =============================================================================


class QuestionAssignee(BaseModel):
    user_id: UUID
    assigned_by: Optional[UUID] = None
    assigned_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TeamQuestion(BaseModel):
    id: UUID
    team_id: UUID
    scope_id: Optional[UUID] = None
    asked_by: Optional[UUID] = None
    asked_by_raven: bool
    question: str
    ai_answer: Optional[str] = None
    ai_confidence: float = 0.0
    status: QuestionStatus
    answer: Optional[str] = None
    answered_by: Optional[UUID] = None
    answered_at: Optional[datetime] = None
    parent_question_id: Optional[UUID] = None
    learning_objective_id: Optional[UUID] = None
    context: Optional[str] = None
    rejection_reason: Optional[str] = None
    assignees: List[QuestionAssignee] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TeamQuestionCreate(RequestModel):
    question: str = Field(..., min_length=1, max_length=5000)
    ai_answer: Optional[str] = None
    ai_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    assignee_ids: List[UUID] = Field(default_factory=list)
    scope_id: Optional[UUID] = None
    context: Optional[str] = None


class AnswerRequest(RequestModel):
    answer: str = Field(..., min_length=1, max_length=10000)
    add_to_knowledge: bool = False


class AssignRequest(RequestModel):
    assignee_ids: List[UUID]


class RejectRequest(RequestModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class ReportedError(BaseModel):
    code: str
    message: str

    model_config = ConfigDict(from_attributes=True)


class KnowledgeCapture(BaseModel):
    status: str
    facts_created: int = 0
    facts_updated: int = 0
    preview_id: Optional[UUID] = None
    error: Optional[ReportedError] = None

    model_config = ConfigDict(from_attributes=True)


class NextStep(BaseModel):
    action: str
    question: Optional[TeamQuestion] = None
    reasoning: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AnswerOutcome(BaseModel):
    question: TeamQuestion
    knowledge_capture: KnowledgeCapture
    next_step: Optional[NextStep] = None
    next_step_error: Optional[ReportedError] = None

    model_config = ConfigDict(from_attributes=True)


class RejectOutcome(BaseModel):
    question: TeamQuestion
    replacement: Optional[TeamQuestion] = None
    replacement_error: Optional[ReportedError] = None

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Ask
# =============================================================================


class AskRequest(RequestModel):
    scope_id: UUID
    question: str = Field(..., min_length=1, max_length=5000)
    include_ancestors: bool = True
    include_private: bool = True


class EscalateRequest(AskRequest):
    assignee_ids: List[UUID] = Field(default_factory=list)
    context: Optional[str] = None


class AskResponse(BaseModel):
    answer: str
    confidence: float
    facts_used: List[Fact]
    suggested_followups: List[str]
    should_escalate: bool
    scope_ids: List[UUID]

    model_config = ConfigDict(from_attributes=True)


class EscalateResponse(BaseModel):
    ask: AskResponse
    question: TeamQuestion


# =============================================================================
# Learning objectives
# =============================================================================


class ObjectiveCreate(RequestModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    scope_id: Optional[UUID] = None
    assigned_to: Optional[UUID] = None
    max_questions: Optional[int] = Field(default=None, ge=1, le=1000)


class ObjectiveUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[ObjectiveStatus] = None
    # Only applied when present in the body; null hands the objective to Raven
    assigned_to: Optional[UUID] = None
    max_questions: Optional[int] = Field(default=None, ge=1, le=1000)


class GenerateQuestionsRequest(RequestModel):
    count: Optional[int] = Field(default=None, ge=1, le=10)


class LearningObjective(BaseModel):
    id: UUID
    team_id: UUID
    scope_id: Optional[UUID] = None
    title: str
    description: Optional[str] = None
    status: ObjectiveStatus
    assigned_to: Optional[UUID] = None
    is_raven_driven: bool
    created_by: Optional[UUID] = None
    max_questions: int
    questions_asked: int
    question_count: int = 0
    answered_count: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_progress(cls, progress) -> "LearningObjective":
        objective = progress.objective
        return cls.model_validate({
            **{name: getattr(objective, name) for name in (
                "id", "team_id", "scope_id", "title", "description", "status",
                "assigned_to", "is_raven_driven", "created_by", "max_questions",
                "questions_asked", "created_at", "updated_at", "completed_at",
            )},
            "question_count": progress.question_count,
            "answered_count": progress.answered_count,
        })
