"""
Team questions: escalating what Raven cannot answer to the team.

TeamQuestion states: ``open -> answered -> closed`` and ``open -> closed``
(direct close or reject). Every transition is a guarded update on the
expected status, so concurrent writers cannot both win.

Answering with ``add_to_knowledge`` feeds the Q&A pair through the Remember
pipeline after the answer is committed. A capture failure is reported on the
outcome and never undoes the answer.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from ravenloom.errors import (
    InvalidParent,
    InvalidQuestionState,
    KnowledgeError,
    NotAnswered,
    NotFound,
    QuestionBudgetExhausted,
    UnresolvedContradiction,
)
from ravenloom.llm.base import KnowledgeLLM
from ravenloom.models import (
    LearningObjective,
    QuestionAssignee,
    QuestionStatus,
    Scope,
    ScopeType,
    TeamQuestion,
    get_current_utc_time,
)
from ravenloom.observability.metrics import team_questions_total
from ravenloom.services.ask_engine import AskResponse
from ravenloom.services.learning_objectives import LearningObjectiveScheduler, NextStepOutcome
from ravenloom.services.remember_pipeline import RememberPipeline
from ravenloom.settings import Settings, get_settings
from ravenloom.stores.scope_store import ScopeTree

logger = logging.getLogger(__name__)


@dataclass
class ReportedError:
    """A failure surfaced on an outcome instead of being raised."""

    code: str
    message: str

    @classmethod
    def from_exception(cls, exc: KnowledgeError) -> "ReportedError":
        return cls(code=exc.code, message=exc.message)


@dataclass
class KnowledgeCapture:
    status: str = "skipped"  # captured | needs_review | failed | skipped
    facts_created: int = 0
    facts_updated: int = 0
    preview_id: Optional[uuid.UUID] = None
    error: Optional[ReportedError] = None


@dataclass
class AnswerOutcome:
    question: TeamQuestion
    knowledge_capture: KnowledgeCapture = field(default_factory=KnowledgeCapture)
    next_step: Optional[NextStepOutcome] = None
    next_step_error: Optional[ReportedError] = None


@dataclass
class RejectOutcome:
    question: TeamQuestion
    replacement: Optional[TeamQuestion] = None
    replacement_error: Optional[ReportedError] = None


def _unique(ids: Optional[Iterable[uuid.UUID]]) -> List[uuid.UUID]:
    seen: List[uuid.UUID] = []
    for item in ids or ():
        if item not in seen:
            seen.append(item)
    return seen


class EscalationManager:
    """
    Post, answer, close and follow up on team questions.

    Args:
        db: SQLAlchemy session
        llm: Capability for follow-ups, replacements and knowledge capture
        settings: Optional settings override
    """

    def __init__(self, db: Session, llm: KnowledgeLLM, settings: Optional[Settings] = None):
        self._db = db
        self._llm = llm
        self._settings = settings or get_settings()
        self._scopes = ScopeTree(db)
        self._scheduler = LearningObjectiveScheduler(db, llm, self._settings)

    # ------------------------------------------------------------------
    # Posting and reading
    # ------------------------------------------------------------------

    def post_question(
        self,
        team_id: uuid.UUID,
        asked_by: Optional[uuid.UUID],
        question: str,
        ai_answer: Optional[str] = None,
        ai_confidence: float = 0.0,
        assignee_ids: Optional[Iterable[uuid.UUID]] = None,
        scope_id: Optional[uuid.UUID] = None,
        context: Optional[str] = None,
        asked_by_raven: bool = False,
        parent_question_id: Optional[uuid.UUID] = None,
        learning_objective_id: Optional[uuid.UUID] = None,
    ) -> TeamQuestion:
        """
        Create an ``open`` team question.

        Raises:
            NotFound: Scope, parent question or objective does not exist
            InvalidParent: Scope belongs to another team
            PermissionDenied: Scope is another user's private scope
        """
        if scope_id is not None:
            scope = self._scopes.require_scope(scope_id)
            if scope.team_id != team_id:
                raise InvalidParent(f"Scope {scope_id} belongs to another team")
            if asked_by is not None:
                self._scopes.assert_can_access(scope, asked_by)
        if parent_question_id is not None:
            self.require_question(parent_question_id)
        if learning_objective_id is not None:
            self._scheduler.require_objective(learning_objective_id)

        record = TeamQuestion(
            team_id=team_id,
            scope_id=scope_id,
            asked_by=asked_by,
            asked_by_raven=asked_by_raven,
            question=question.strip(),
            ai_answer=ai_answer,
            ai_confidence=ai_confidence or 0.0,
            status=QuestionStatus.open,
            parent_question_id=parent_question_id,
            learning_objective_id=learning_objective_id,
            context=context,
        )
        for user_id in _unique(assignee_ids):
            record.assignees.append(QuestionAssignee(user_id=user_id, assigned_by=asked_by))

        self._db.add(record)
        self._db.commit()
        self._db.refresh(record)
        team_questions_total.labels(origin="raven" if asked_by_raven else "human").inc()
        logger.info("Posted question %s to team %s", record.id, team_id)
        return record

    def escalate_ask(
        self,
        scope_id: uuid.UUID,
        question: str,
        user_id: uuid.UUID,
        response: AskResponse,
        assignee_ids: Optional[Iterable[uuid.UUID]] = None,
        context: Optional[str] = None,
    ) -> TeamQuestion:
        """Post a question carrying Raven's attempted answer."""
        scope = self._scopes.require_accessible(scope_id, user_id)
        return self.post_question(
            team_id=scope.team_id,
            asked_by=user_id,
            question=question,
            ai_answer=response.answer,
            ai_confidence=response.confidence,
            assignee_ids=assignee_ids,
            scope_id=scope.id,
            context=context,
        )

    def get_question(self, question_id: uuid.UUID) -> Optional[TeamQuestion]:
        return self._db.query(TeamQuestion).filter(TeamQuestion.id == question_id).first()

    def require_question(self, question_id: uuid.UUID) -> TeamQuestion:
        question = self.get_question(question_id)
        if question is None:
            raise NotFound("question", question_id)
        return question

    def require_visible_question(self, question_id: uuid.UUID, user_id: uuid.UUID) -> TeamQuestion:
        """
        Load a question the user may see.

        Raises:
            NotFound: Unknown question
            PermissionDenied: Question sits in another user's private scope
        """
        question = self.require_question(question_id)
        if question.scope_id is not None:
            self._scopes.require_accessible(question.scope_id, user_id)
        return question

    def get_assignees(self, question_id: uuid.UUID) -> List[QuestionAssignee]:
        return self.require_question(question_id).assignees

    def get_follow_ups(self, question_id: uuid.UUID, user_id: uuid.UUID) -> List[TeamQuestion]:
        self.require_visible_question(question_id, user_id)
        return (
            self._db.query(TeamQuestion)
            .filter(TeamQuestion.parent_question_id == question_id)
            .order_by(TeamQuestion.created_at.asc())
            .all()
        )

    def list_questions(
        self,
        team_id: uuid.UUID,
        user_id: uuid.UUID,
        status: Optional[QuestionStatus] = None,
        assigned_to: Optional[uuid.UUID] = None,
        limit: int = 50,
    ) -> List[TeamQuestion]:
        """
        Team questions the user may see, open ones first, newest first within
        each group. Questions in other users' private scopes are left out.
        """
        query = (
            self._db.query(TeamQuestion)
            .outerjoin(Scope, Scope.id == TeamQuestion.scope_id)
            .filter(TeamQuestion.team_id == team_id)
            .filter(
                or_(
                    TeamQuestion.scope_id.is_(None),
                    Scope.scope_type != ScopeType.private,
                    Scope.owner_id == user_id,
                )
            )
        )
        if status is not None:
            query = query.filter(TeamQuestion.status == status)
        if assigned_to is not None:
            query = query.join(
                QuestionAssignee, QuestionAssignee.question_id == TeamQuestion.id
            ).filter(QuestionAssignee.user_id == assigned_to)
        return (
            query.order_by(
                case((TeamQuestion.status == QuestionStatus.open, 0), else_=1),
                TeamQuestion.created_at.desc(),
            )
            .limit(limit)
            .all()
        )

    def open_question_count(self, team_id: uuid.UUID) -> int:
        return (
            self._db.query(func.count(TeamQuestion.id))
            .filter(TeamQuestion.team_id == team_id, TeamQuestion.status == QuestionStatus.open)
            .scalar()
        ) or 0

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def answer(
        self,
        question_id: uuid.UUID,
        user_id: uuid.UUID,
        answer_text: str,
        add_to_knowledge: bool = False,
    ) -> AnswerOutcome:
        """
        Answer an open question.

        The answer is committed before knowledge capture and the objective's
        next step run; their failures are reported on the outcome.

        Raises:
            NotFound: Unknown question
            InvalidQuestionState: Question is not open
        """
        question = self.require_visible_question(question_id, user_id)
        if question.status != QuestionStatus.open:
            raise InvalidQuestionState(
                f"Question {question_id} is {question.status.value} and cannot be answered"
            )

        now = get_current_utc_time()
        answer_text = answer_text.strip()
        self._transition(
            question_id,
            QuestionStatus.open,
            {
                TeamQuestion.status: QuestionStatus.answered,
                TeamQuestion.answer: answer_text,
                TeamQuestion.answered_by: user_id,
                TeamQuestion.answered_at: now,
                TeamQuestion.updated_at: now,
            },
        )
        self._db.refresh(question)
        logger.info("Question %s answered by %s", question_id, user_id)

        outcome = AnswerOutcome(question=question)
        if add_to_knowledge:
            outcome.knowledge_capture = self._capture(question, user_id)

        if question.learning_objective_id is not None:
            try:
                outcome.next_step = self._scheduler.process_answered_question(question.id)
            except KnowledgeError as exc:
                logger.warning("Next step for question %s failed: %s", question_id, exc.message)
                outcome.next_step_error = ReportedError.from_exception(exc)

        self._db.refresh(question)
        return outcome

    def close(self, question_id: uuid.UUID, user_id: uuid.UUID) -> TeamQuestion:
        question = self.require_visible_question(question_id, user_id)
        if question.status == QuestionStatus.closed:
            raise InvalidQuestionState(f"Question {question_id} is already closed")

        self._transition(
            question_id,
            question.status,
            {
                TeamQuestion.status: QuestionStatus.closed,
                TeamQuestion.updated_at: get_current_utc_time(),
            },
        )
        self._db.refresh(question)
        logger.info("Question %s closed by %s", question_id, user_id)
        return question

    def assign(
        self,
        question_id: uuid.UUID,
        assignee_ids: Iterable[uuid.UUID],
        assigned_by: Optional[uuid.UUID] = None,
    ) -> TeamQuestion:
        """Replace the assignees of a question."""
        if assigned_by is not None:
            question = self.require_visible_question(question_id, assigned_by)
        else:
            question = self.require_question(question_id)
        self._db.query(QuestionAssignee).filter(
            QuestionAssignee.question_id == question.id
        ).delete(synchronize_session=False)
        self._db.expire(question, ["assignees"])
        for user_id in _unique(assignee_ids):
            self._db.add(QuestionAssignee(
                question_id=question.id,
                user_id=user_id,
                assigned_by=assigned_by,
            ))
        self._db.commit()
        self._db.refresh(question)
        return question

    def ask_follow_up(self, question_id: uuid.UUID, user_id: uuid.UUID) -> TeamQuestion:
        """
        Have Raven ask a follow-up to an answered question.

        Under a Raven-driven objective the follow-up draws on its budget.

        Raises:
            NotAnswered: Question is not answered
            QuestionBudgetExhausted: The objective cannot ask more
            LLMUnavailable: No follow-up could be generated
        """
        question = self.require_visible_question(question_id, user_id)
        if question.status != QuestionStatus.answered:
            raise NotAnswered(f"Question {question_id} must be answered before a follow-up")

        objective = None
        if question.learning_objective_id is not None:
            objective = self._scheduler.get_objective(question.learning_objective_id)
        governed = objective is not None and objective.is_raven_driven
        if governed and not self._scheduler.can_ask_more(objective.id):
            raise QuestionBudgetExhausted(
                f"Objective {objective.id} has no question budget left or is not active"
            )

        text = self._llm.generate_follow_up(
            question.question,
            question.answer,
            self._follow_up_context(question, objective),
        )

        if governed:
            child = self._scheduler.reserve_and_create(
                objective,
                text,
                parent_question_id=question.id,
                scope_id=question.scope_id,
            )
            if child is None:
                raise QuestionBudgetExhausted(
                    f"Objective {objective.id} ran out of question budget"
                )
            return child

        child = TeamQuestion(
            team_id=question.team_id,
            scope_id=question.scope_id,
            asked_by=user_id,
            asked_by_raven=True,
            question=text.strip(),
            status=QuestionStatus.open,
            parent_question_id=question.id,
            learning_objective_id=question.learning_objective_id,
        )
        self._db.add(child)
        self._db.commit()
        self._db.refresh(child)
        team_questions_total.labels(origin="follow_up").inc()
        logger.info("Raven asked follow-up %s to question %s", child.id, question_id)
        return child

    def reject(
        self,
        question_id: uuid.UUID,
        user_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> RejectOutcome:
        """
        Reject an open Raven question and ask for a replacement.

        The rejection is committed first. The replacement is a new top-level
        question under the same objective, created only within budget.

        Raises:
            InvalidQuestionState: Not a Raven question, or not open
        """
        question = self.require_visible_question(question_id, user_id)
        if not question.asked_by_raven:
            raise InvalidQuestionState("Only questions asked by Raven can be rejected")
        if question.status != QuestionStatus.open:
            raise InvalidQuestionState(
                f"Question {question_id} is {question.status.value} and cannot be rejected"
            )

        # An empty reason still marks the question as rejected
        self._transition(
            question_id,
            QuestionStatus.open,
            {
                TeamQuestion.status: QuestionStatus.closed,
                TeamQuestion.rejection_reason: (reason or "").strip(),
                TeamQuestion.updated_at: get_current_utc_time(),
            },
        )
        self._db.refresh(question)
        logger.info("Question %s rejected by %s", question_id, user_id)

        outcome = RejectOutcome(question=question)
        if question.learning_objective_id is not None:
            try:
                outcome.replacement = self._scheduler.generate_replacement(
                    question.learning_objective_id,
                    rejected=question,
                    reason=reason,
                )
            except KnowledgeError as exc:
                logger.warning("Replacement for question %s failed: %s", question_id, exc.message)
                outcome.replacement_error = ReportedError.from_exception(exc)
        return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, question_id: uuid.UUID, expected: QuestionStatus, values: dict) -> None:
        moved = self._db.query(TeamQuestion).filter(
            TeamQuestion.id == question_id,
            TeamQuestion.status == expected,
        ).update(values, synchronize_session=False)
        if moved == 0:
            self._db.rollback()
            logger.warning("Question %s left %s concurrently", question_id, expected.value)
            raise InvalidQuestionState(f"Question {question_id} changed concurrently")
        self._db.commit()

    def _capture(self, question: TeamQuestion, user_id: uuid.UUID) -> KnowledgeCapture:
        scope_id = question.scope_id
        if scope_id is None:
            root = self._scopes.get_team_root(question.team_id)
            if root is None:
                error = NotFound("team root scope", question.team_id)
                logger.warning("Knowledge capture for question %s failed: %s", question.id, error.message)
                return KnowledgeCapture(status="failed", error=ReportedError.from_exception(error))
            scope_id = root.id

        pipeline = RememberPipeline(self._db, self._llm, self._settings)
        statement = f"Q: {question.question}\nA: {question.answer}"
        preview = None
        try:
            preview = pipeline.preview(scope_id, statement, user_id)
            result = pipeline.confirm(preview.preview_id, user_id)
        except UnresolvedContradiction as exc:
            logger.info("Answer to question %s contradicts existing knowledge", question.id)
            return KnowledgeCapture(
                status="needs_review",
                preview_id=preview.preview_id,
                error=ReportedError.from_exception(exc),
            )
        except KnowledgeError as exc:
            logger.warning("Knowledge capture for question %s failed: %s", question.id, exc.message)
            return KnowledgeCapture(
                status="failed",
                preview_id=preview.preview_id if preview is not None else None,
                error=ReportedError.from_exception(exc),
            )

        return KnowledgeCapture(
            status="captured",
            facts_created=len(result.facts_created),
            facts_updated=len(result.facts_updated),
            preview_id=preview.preview_id,
        )

    def _follow_up_context(
        self,
        question: TeamQuestion,
        objective: Optional[LearningObjective],
    ) -> Optional[str]:
        parts = []
        if objective is not None:
            parts.append(f"Learning objective: {objective.title}")
            if objective.description:
                parts.append(objective.description)
        if question.scope_id is not None:
            scope = self._scopes.get_scope(question.scope_id)
            if scope is not None:
                parts.append(f"Knowledge area: {scope.name}")
                if scope.summary:
                    parts.append(scope.summary)
        if question.context:
            parts.append(question.context)
        return "\n".join(parts) or None
