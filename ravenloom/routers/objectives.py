"""
Learning Objectives Router.

- CRUD for team learning objectives (with question progress counts)
- Top-level questions of an objective
- Manual question generation for Raven-driven objectives
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ravenloom import schemas
from ravenloom.database import get_db
from ravenloom.dependencies import get_current_user_id, get_llm_dependency, get_settings_dependency
from ravenloom.llm import KnowledgeLLM
from ravenloom.models import ObjectiveStatus
from ravenloom.observability.logging import set_request_context
from ravenloom.services.learning_objectives import LearningObjectiveScheduler
from ravenloom.settings import Settings

router = APIRouter(prefix="/api/v1", tags=["objectives"])


def get_scheduler(
    db: Session = Depends(get_db),
    llm: KnowledgeLLM = Depends(get_llm_dependency),
    settings: Settings = Depends(get_settings_dependency),
) -> LearningObjectiveScheduler:
    return LearningObjectiveScheduler(db, llm, settings)


@router.post("/teams/{team_id}/objectives", response_model=schemas.LearningObjective, status_code=201)
async def create_objective(
    team_id: UUID,
    request: schemas.ObjectiveCreate,
    user_id: UUID = Depends(get_current_user_id),
    scheduler: LearningObjectiveScheduler = Depends(get_scheduler),
):
    """Create an objective; without an assignee Raven starts asking right away."""
    set_request_context(team_id=str(team_id))
    objective = scheduler.create_objective(
        team_id=team_id,
        created_by=user_id,
        title=request.title,
        description=request.description,
        scope_id=request.scope_id,
        assigned_to=request.assigned_to,
        max_questions=request.max_questions,
    )
    return schemas.LearningObjective.from_progress(scheduler.progress(objective))


@router.get("/teams/{team_id}/objectives", response_model=List[schemas.LearningObjective])
async def list_objectives(
    team_id: UUID,
    status: Optional[ObjectiveStatus] = None,
    assigned_to: Optional[UUID] = None,
    raven_only: bool = False,
    user_id: UUID = Depends(get_current_user_id),
    scheduler: LearningObjectiveScheduler = Depends(get_scheduler),
):
    progress = scheduler.list_objectives(
        team_id,
        status=status,
        assigned_to=assigned_to,
        raven_only=raven_only,
    )
    return [schemas.LearningObjective.from_progress(p) for p in progress]


@router.get("/objectives/{objective_id}", response_model=schemas.LearningObjective)
async def get_objective(
    objective_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    scheduler: LearningObjectiveScheduler = Depends(get_scheduler),
):
    objective = scheduler.require_objective(objective_id)
    return schemas.LearningObjective.from_progress(scheduler.progress(objective))


@router.patch("/objectives/{objective_id}", response_model=schemas.LearningObjective)
async def update_objective(
    objective_id: UUID,
    request: schemas.ObjectiveUpdate,
    user_id: UUID = Depends(get_current_user_id),
    scheduler: LearningObjectiveScheduler = Depends(get_scheduler),
):
    """Completed objectives stay completed; moving them elsewhere is rejected."""
    changes = {
        "title": request.title,
        "description": request.description,
        "status": request.status,
        "max_questions": request.max_questions,
    }
    if "assigned_to" in request.model_fields_set:
        changes["assigned_to"] = request.assigned_to
    objective = scheduler.update_objective(objective_id, **changes)
    return schemas.LearningObjective.from_progress(scheduler.progress(objective))


@router.delete("/objectives/{objective_id}", status_code=204)
async def delete_objective(
    objective_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    scheduler: LearningObjectiveScheduler = Depends(get_scheduler),
):
    scheduler.delete_objective(objective_id)


@router.get("/objectives/{objective_id}/questions", response_model=List[schemas.TeamQuestion])
async def list_objective_questions(
    objective_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    scheduler: LearningObjectiveScheduler = Depends(get_scheduler),
):
    return scheduler.objective_questions(objective_id)


@router.post(
    "/objectives/{objective_id}/questions/generate",
    response_model=List[schemas.TeamQuestion],
    status_code=201,
)
async def generate_objective_questions(
    objective_id: UUID,
    request: Optional[schemas.GenerateQuestionsRequest] = None,
    user_id: UUID = Depends(get_current_user_id),
    scheduler: LearningObjectiveScheduler = Depends(get_scheduler),
):
    """Ask Raven for more questions; returns an empty list once the budget is spent."""
    count = request.count if request is not None else None
    return scheduler.generate_questions(objective_id, count=count)
