"""
Ask Router.

- POST /ask: answer a question from current facts (read-only, safe to retry)
- POST /ask/escalate: ask, then post the question to the team with Raven's attempt
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ravenloom import schemas
from ravenloom.database import get_db
from ravenloom.dependencies import get_current_user_id, get_llm_dependency, get_settings_dependency
from ravenloom.llm import KnowledgeLLM
from ravenloom.services.ask_engine import AskEngine
from ravenloom.services.escalation import EscalationManager
from ravenloom.settings import Settings

router = APIRouter(prefix="/api/v1/ask", tags=["ask"])


@router.post("", response_model=schemas.AskResponse)
async def ask_raven(
    request: schemas.AskRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    llm: KnowledgeLLM = Depends(get_llm_dependency),
    settings: Settings = Depends(get_settings_dependency),
):
    response = AskEngine(db, llm, settings).ask(
        request.scope_id,
        request.question,
        user_id,
        include_ancestors=request.include_ancestors,
        include_private=request.include_private,
    )
    return schemas.AskResponse.model_validate(response)


@router.post("/escalate", response_model=schemas.EscalateResponse, status_code=201)
async def ask_and_escalate(
    request: schemas.EscalateRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    llm: KnowledgeLLM = Depends(get_llm_dependency),
    settings: Settings = Depends(get_settings_dependency),
):
    """Escalate a question to the team, carrying Raven's attempted answer."""
    response = AskEngine(db, llm, settings).ask(
        request.scope_id,
        request.question,
        user_id,
        include_ancestors=request.include_ancestors,
        include_private=request.include_private,
    )
    question = EscalationManager(db, llm, settings).escalate_ask(
        request.scope_id,
        request.question,
        user_id,
        response,
        assignee_ids=request.assignee_ids,
        context=request.context,
    )
    return schemas.EscalateResponse(
        ask=schemas.AskResponse.model_validate(response),
        question=schemas.TeamQuestion.model_validate(question),
    )
