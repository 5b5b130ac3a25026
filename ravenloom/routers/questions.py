"""
Team Questions Router.

Escalated questions and their lifecycle:
- Post and list team questions (open first)
- Answer (optionally capturing the answer as knowledge), close, reassign
- Raven follow-ups and rejection of Raven questions
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ravenloom import schemas
from ravenloom.database import get_db
from ravenloom.dependencies import get_current_user_id, get_llm_dependency, get_settings_dependency
from ravenloom.llm import KnowledgeLLM
from ravenloom.models import QuestionStatus
from ravenloom.observability.logging import set_request_context
from ravenloom.services.escalation import EscalationManager
from ravenloom.settings import Settings

router = APIRouter(prefix="/api/v1", tags=["questions"])


def get_manager(
    db: Session = Depends(get_db),
    llm: KnowledgeLLM = Depends(get_llm_dependency),
    settings: Settings = Depends(get_settings_dependency),
) -> EscalationManager:
    return EscalationManager(db, llm, settings)


@router.post("/teams/{team_id}/questions", response_model=schemas.TeamQuestion, status_code=201)
async def create_team_question(
    team_id: UUID,
    request: schemas.TeamQuestionCreate,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    set_request_context(team_id=str(team_id))
    return manager.post_question(
        team_id=team_id,
        asked_by=user_id,
        question=request.question,
        ai_answer=request.ai_answer,
        ai_confidence=request.ai_confidence,
        assignee_ids=request.assignee_ids,
        scope_id=request.scope_id,
        context=request.context,
    )


@router.get("/teams/{team_id}/questions", response_model=List[schemas.TeamQuestion])
async def list_team_questions(
    team_id: UUID,
    status: Optional[QuestionStatus] = None,
    assigned_to: Optional[UUID] = None,
    limit: int = Query(default=50, ge=1, le=200),
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    return manager.list_questions(team_id, user_id, status=status, assigned_to=assigned_to, limit=limit)


@router.get("/questions/{question_id}", response_model=schemas.TeamQuestion)
async def get_team_question(
    question_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    return manager.require_visible_question(question_id, user_id)


@router.get("/questions/{question_id}/follow-ups", response_model=List[schemas.TeamQuestion])
async def list_follow_ups(
    question_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    return manager.get_follow_ups(question_id, user_id)


@router.post("/questions/{question_id}/answer", response_model=schemas.AnswerOutcome)
async def answer_team_question(
    question_id: UUID,
    request: schemas.AnswerRequest,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    """
    Answer an open question.

    The answer always sticks; knowledge capture and the objective's next
    step report their own status in the response.
    """
    outcome = manager.answer(
        question_id,
        user_id,
        request.answer,
        add_to_knowledge=request.add_to_knowledge,
    )
    return schemas.AnswerOutcome.model_validate(outcome)


@router.post("/questions/{question_id}/close", response_model=schemas.TeamQuestion)
async def close_team_question(
    question_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    return manager.close(question_id, user_id)


@router.put("/questions/{question_id}/assignees", response_model=schemas.TeamQuestion)
async def assign_team_question(
    question_id: UUID,
    request: schemas.AssignRequest,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    return manager.assign(question_id, request.assignee_ids, assigned_by=user_id)


@router.post("/questions/{question_id}/follow-up", response_model=schemas.TeamQuestion, status_code=201)
async def ask_follow_up_question(
    question_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    return manager.ask_follow_up(question_id, user_id)


@router.post("/questions/{question_id}/reject", response_model=schemas.RejectOutcome)
async def reject_question(
    question_id: UUID,
    request: Optional[schemas.RejectRequest] = None,
    user_id: UUID = Depends(get_current_user_id),
    manager: EscalationManager = Depends(get_manager),
):
    """Reject a Raven question; a replacement is asked within the objective's budget."""
    reason = request.reason if request is not None else None
    return schemas.RejectOutcome.model_validate(manager.reject(question_id, user_id, reason=reason))
