"""
Learning objectives: research goals that Raven (or a teammate) works through
by asking the team questions.

An objective with ``assigned_to = NULL`` is Raven-driven. Raven-authored
questions under it draw on a budget of ``max_questions``; every such question
is created together with an atomic reservation

    UPDATE learning_objectives SET questions_asked = questions_asked + 1
    WHERE id = :id AND status = 'active' AND assigned_to IS NULL
      AND questions_asked < max_questions

in one transaction, so concurrent workers can never overrun the budget.

Status policy: ``active`` and ``paused`` move freely; ``completed`` is
terminal.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ravenloom.errors import InvalidObjectiveTransition, InvalidParent, LLMUnavailable, NotFound
from ravenloom.llm.base import KnowledgeLLM, ObjectiveBrief, QAPair
from ravenloom.models import (
    LearningObjective,
    ObjectiveStatus,
    QuestionStatus,
    TeamQuestion,
    get_current_utc_time,
)
from ravenloom.observability.metrics import team_questions_total
from ravenloom.settings import Settings, get_settings
from ravenloom.stores.scope_store import ScopeTree

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class ObjectiveProgress:
    objective: LearningObjective
    question_count: int = 0
    answered_count: int = 0


@dataclass
class NextStepOutcome:
    """What happened after an answer under a Raven-driven objective."""

    action: str
    question: Optional[TeamQuestion] = None
    reasoning: Optional[str] = None


def _brief(objective: LearningObjective) -> ObjectiveBrief:
    return ObjectiveBrief(title=objective.title, description=objective.description)


class LearningObjectiveScheduler:
    """
    Manage learning objectives and the Raven questions asked under them.

    Args:
        db: SQLAlchemy session
        llm: Capability that writes questions and decides next steps
        settings: Optional settings override (budget defaults)
    """

    def __init__(self, db: Session, llm: KnowledgeLLM, settings: Optional[Settings] = None):
        self._db = db
        self._llm = llm
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Objectives
    # ------------------------------------------------------------------

    def create_objective(
        self,
        team_id: uuid.UUID,
        created_by: uuid.UUID,
        title: str,
        description: Optional[str] = None,
        scope_id: Optional[uuid.UUID] = None,
        assigned_to: Optional[uuid.UUID] = None,
        max_questions: Optional[int] = None,
    ) -> LearningObjective:
        """
        Create an objective; Raven-driven ones get their first questions.

        Seeding is best effort: when the LLM is unavailable the objective is
        kept without questions and can be seeded later with
        ``generate_questions``.
        """
        if scope_id is not None:
            scope = ScopeTree(self._db).require_scope(scope_id)
            if scope.team_id != team_id:
                raise InvalidParent(f"Scope {scope_id} belongs to another team")

        objective = LearningObjective(
            team_id=team_id,
            scope_id=scope_id,
            title=title.strip(),
            description=description,
            status=ObjectiveStatus.active,
            assigned_to=assigned_to,
            created_by=created_by,
            max_questions=max_questions or self._settings.default_max_questions,
            questions_asked=0,
        )
        self._db.add(objective)
        self._db.commit()
        self._db.refresh(objective)
        logger.info("Created learning objective %s for team %s", objective.id, team_id)

        if objective.is_raven_driven and self._settings.initial_question_count > 0:
            try:
                self.generate_questions(
                    objective.id,
                    count=self._settings.initial_question_count,
                    is_initial=True,
                )
            except LLMUnavailable:
                logger.warning(
                    "Could not seed questions for objective %s", objective.id, exc_info=True
                )
            self._db.refresh(objective)
        return objective

    def get_objective(self, objective_id: uuid.UUID) -> Optional[LearningObjective]:
        return (
            self._db.query(LearningObjective)
            .filter(LearningObjective.id == objective_id)
            .first()
        )

    def require_objective(self, objective_id: uuid.UUID) -> LearningObjective:
        objective = self.get_objective(objective_id)
        if objective is None:
            raise NotFound("learning objective", objective_id)
        return objective

    def progress(self, objective: LearningObjective) -> ObjectiveProgress:
        counts = self._question_counts([objective.id])
        total, answered = counts.get(objective.id, (0, 0))
        return ObjectiveProgress(objective=objective, question_count=total, answered_count=answered)

    def list_objectives(
        self,
        team_id: uuid.UUID,
        status: Optional[ObjectiveStatus] = None,
        assigned_to: Optional[uuid.UUID] = None,
        raven_only: bool = False,
    ) -> List[ObjectiveProgress]:
        """Objectives of a team, newest first, with question counts."""
        query = self._db.query(LearningObjective).filter(LearningObjective.team_id == team_id)
        if status is not None:
            query = query.filter(LearningObjective.status == status)
        if raven_only:
            query = query.filter(LearningObjective.assigned_to.is_(None))
        elif assigned_to is not None:
            query = query.filter(LearningObjective.assigned_to == assigned_to)
        objectives = query.order_by(LearningObjective.created_at.desc()).all()

        counts = self._question_counts([o.id for o in objectives])
        return [
            ObjectiveProgress(
                objective=o,
                question_count=counts.get(o.id, (0, 0))[0],
                answered_count=counts.get(o.id, (0, 0))[1],
            )
            for o in objectives
        ]

    def update_objective(
        self,
        objective_id: uuid.UUID,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[ObjectiveStatus] = None,
        assigned_to=_UNSET,
        max_questions: Optional[int] = None,
    ) -> LearningObjective:
        """
        Update an objective. Pass ``assigned_to=None`` to hand it to Raven.

        Raises:
            InvalidObjectiveTransition: Leaving ``completed``, or a budget
                below the questions already asked
        """
        objective = self.require_objective(objective_id)
        if (
            objective.status == ObjectiveStatus.completed
            and status is not None
            and status != ObjectiveStatus.completed
        ):
            raise InvalidObjectiveTransition(
                f"Objective {objective_id} is completed and cannot become {status.value}"
            )
        if max_questions is not None and max_questions < objective.questions_asked:
            raise InvalidObjectiveTransition(
                f"max_questions {max_questions} is below the {objective.questions_asked} "
                "questions already asked"
            )

        if title is not None:
            objective.title = title.strip()
        if description is not None:
            objective.description = description
        if assigned_to is not _UNSET:
            objective.assigned_to = assigned_to
        if max_questions is not None:
            objective.max_questions = max_questions

        try:
            self._db.commit()
        except IntegrityError as exc:
            # ck_objective_budget: a reservation landed after the check above
            self._db.rollback()
            raise InvalidObjectiveTransition(
                f"max_questions {max_questions} is below the questions already asked"
            ) from exc

        if status is not None:
            return self.update_status(objective_id, status)
        self._db.refresh(objective)
        return objective

    def update_status(self, objective_id: uuid.UUID, status: ObjectiveStatus) -> LearningObjective:
        """
        Move an objective between statuses.

        ``completed`` is terminal: completing twice is a no-op, anything else
        out of ``completed`` raises InvalidObjectiveTransition.
        """
        objective = self.require_objective(objective_id)
        if objective.status == status:
            return objective
        if objective.status == ObjectiveStatus.completed:
            raise InvalidObjectiveTransition(
                f"Objective {objective_id} is completed and cannot become {status.value}"
            )

        now = get_current_utc_time()
        values = {LearningObjective.status: status, LearningObjective.updated_at: now}
        if status == ObjectiveStatus.completed:
            values[LearningObjective.completed_at] = now

        moved = self._db.query(LearningObjective).filter(
            LearningObjective.id == objective_id,
            LearningObjective.status != ObjectiveStatus.completed,
        ).update(values, synchronize_session=False)
        if moved == 0:
            self._db.rollback()
            logger.warning("Objective %s was completed concurrently", objective_id)
            raise InvalidObjectiveTransition(f"Objective {objective_id} was completed concurrently")
        self._db.commit()
        self._db.refresh(objective)
        logger.info("Objective %s is now %s", objective_id, status.value)
        return objective

    def delete_objective(self, objective_id: uuid.UUID) -> None:
        """Delete an objective; its questions stay, detached from it."""
        objective = self.require_objective(objective_id)
        self._db.query(TeamQuestion).filter(
            TeamQuestion.learning_objective_id == objective.id
        ).update({TeamQuestion.learning_objective_id: None}, synchronize_session=False)
        self._db.delete(objective)
        self._db.commit()
        logger.info("Deleted learning objective %s", objective_id)

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def can_ask_more(self, objective_id: uuid.UUID) -> bool:
        objective = self.require_objective(objective_id)
        return (
            objective.status == ObjectiveStatus.active
            and objective.is_raven_driven
            and objective.questions_asked < objective.max_questions
        )

    def objective_questions(self, objective_id: uuid.UUID) -> List[TeamQuestion]:
        """Top-level questions of an objective, newest first."""
        self.require_objective(objective_id)
        return (
            self._db.query(TeamQuestion)
            .filter(
                TeamQuestion.learning_objective_id == objective_id,
                TeamQuestion.parent_question_id.is_(None),
            )
            .order_by(TeamQuestion.created_at.desc())
            .all()
        )

    def generate_questions(
        self,
        objective_id: uuid.UUID,
        count: Optional[int] = None,
        is_initial: bool = False,
    ) -> List[TeamQuestion]:
        """
        Ask the LLM for top-level questions and create them within budget.

        Returns the created questions; empty when the objective cannot ask
        more. Stops early when the budget runs out.
        """
        objective = self.require_objective(objective_id)
        if not self.can_ask_more(objective_id):
            return []

        remaining = objective.max_questions - objective.questions_asked
        count = min(count or self._settings.initial_question_count, remaining)
        if count <= 0:
            return []

        texts = self._llm.generate_learning_questions(
            _brief(objective),
            self._history(objective.id),
            count,
            is_initial=is_initial,
        )

        created: List[TeamQuestion] = []
        for text in texts[:count]:
            question = self.reserve_and_create(objective, text)
            if question is None:
                break
            created.append(question)
        logger.info("Generated %d questions for objective %s", len(created), objective_id)
        return created

    def generate_replacement(
        self,
        objective_id: uuid.UUID,
        rejected: Optional[TeamQuestion] = None,
        reason: Optional[str] = None,
    ) -> Optional[TeamQuestion]:
        """
        Replace a rejected question with a new top-level one.

        Returns None, without calling the LLM, when the budget is spent or
        the objective is not active; an exhausted budget is expected, not an
        error.
        """
        objective = self.require_objective(objective_id)
        if not self.can_ask_more(objective_id):
            logger.info("Objective %s cannot ask more; no replacement", objective_id)
            return None

        previously_rejected = [
            q.question
            for q in self._db.query(TeamQuestion)
            .filter(
                TeamQuestion.learning_objective_id == objective.id,
                TeamQuestion.rejection_reason.isnot(None),
            )
            .order_by(TeamQuestion.created_at.asc())
            .all()
            if rejected is None or q.id != rejected.id
        ]
        text = self._llm.generate_replacement(
            _brief(objective),
            rejected.question if rejected is not None else "",
            reason,
            previously_rejected,
            self._history(objective.id),
        )
        return self.reserve_and_create(objective, text)

    def process_answered_question(self, question_id: uuid.UUID) -> Optional[NextStepOutcome]:
        """
        Let the LLM decide what follows an answer under a Raven-driven objective.

        Returns None when the question has no active Raven-driven objective,
        is not answered, or the budget is spent.
        """
        question = self._db.query(TeamQuestion).filter(TeamQuestion.id == question_id).first()
        if question is None:
            raise NotFound("question", question_id)
        if question.learning_objective_id is None or question.status != QuestionStatus.answered:
            return None

        objective = self.get_objective(question.learning_objective_id)
        if objective is None or not objective.is_raven_driven:
            return None
        if objective.status != ObjectiveStatus.active:
            return None
        if objective.questions_asked >= objective.max_questions:
            logger.info("Objective %s hit its question budget", objective.id)
            return None

        history = self._history(objective.id, answered_only=True, exclude=question.id)
        decision = self._llm.decide_next_step(
            _brief(objective),
            QAPair(question=question.question, answer=question.answer),
            history,
            can_ask_more=True,
        )

        if decision.action == "complete":
            self.update_status(objective.id, ObjectiveStatus.completed)
            return NextStepOutcome(action="complete", reasoning=decision.reasoning)

        parent_id = question.id if decision.action == "followup" else None
        created = self.reserve_and_create(
            objective,
            decision.question,
            parent_question_id=parent_id,
            scope_id=question.scope_id if parent_id else objective.scope_id,
        )
        if created is None:
            return None
        return NextStepOutcome(action=decision.action, question=created, reasoning=decision.reasoning)

    def reserve_and_create(
        self,
        objective: LearningObjective,
        text: str,
        parent_question_id: Optional[uuid.UUID] = None,
        scope_id=_UNSET,
        context: Optional[str] = None,
    ) -> Optional[TeamQuestion]:
        """
        Reserve one unit of budget and create a Raven question in one transaction.

        Returns None, creating nothing, when the reservation fails because
        the objective is not active, not Raven-driven, or out of budget.
        """
        objective_id = objective.id
        try:
            reserved = self._db.query(LearningObjective).filter(
                LearningObjective.id == objective_id,
                LearningObjective.status == ObjectiveStatus.active,
                LearningObjective.assigned_to.is_(None),
                LearningObjective.questions_asked < LearningObjective.max_questions,
            ).update(
                {
                    LearningObjective.questions_asked: LearningObjective.questions_asked + 1,
                    LearningObjective.updated_at: get_current_utc_time(),
                },
                synchronize_session=False,
            )
            if reserved == 0:
                self._db.rollback()
                logger.warning("Question budget reservation failed for objective %s", objective_id)
                return None

            question = TeamQuestion(
                team_id=objective.team_id,
                scope_id=objective.scope_id if scope_id is _UNSET else scope_id,
                asked_by=objective.created_by,
                asked_by_raven=True,
                question=text.strip(),
                status=QuestionStatus.open,
                parent_question_id=parent_question_id,
                learning_objective_id=objective_id,
                context=context,
            )
            self._db.add(question)
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise

        self._db.refresh(question)
        team_questions_total.labels(origin="objective").inc()
        logger.info("Raven asked question %s under objective %s", question.id, objective_id)
        return question

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _history(
        self,
        objective_id: uuid.UUID,
        answered_only: bool = False,
        exclude: Optional[uuid.UUID] = None,
    ) -> List[QAPair]:
        query = self._db.query(TeamQuestion).filter(
            TeamQuestion.learning_objective_id == objective_id
        )
        if answered_only:
            query = query.filter(TeamQuestion.status == QuestionStatus.answered)
        if exclude is not None:
            query = query.filter(TeamQuestion.id != exclude)
        return [
            QAPair(question=q.question, answer=q.answer)
            for q in query.order_by(TeamQuestion.created_at.asc()).all()
        ]

    def _question_counts(self, objective_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, Tuple[int, int]]:
        if not objective_ids:
            return {}
        rows = (
            self._db.query(
                TeamQuestion.learning_objective_id,
                func.count(TeamQuestion.id),
                func.sum(case((TeamQuestion.status == QuestionStatus.answered, 1), else_=0)),
            )
            .filter(
                TeamQuestion.learning_objective_id.in_(list(objective_ids)),
                TeamQuestion.parent_question_id.is_(None),
            )
            .group_by(TeamQuestion.learning_objective_id)
            .all()
        )
        return {objective_id: (int(total), int(answered or 0)) for objective_id, total, answered in rows}
