"""
Remember Router.

Two-phase write of team knowledge:
- POST /remember/preview: extract facts and conflicts, write nothing
- POST /remember/{preview_id}/confirm: materialize a drafting preview once
- POST /remember/{preview_id}/cancel: discard a drafting preview
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ravenloom import schemas
from ravenloom.database import get_db
from ravenloom.dependencies import get_current_user_id, get_llm_dependency, get_settings_dependency
from ravenloom.llm import KnowledgeLLM
from ravenloom.services.remember_pipeline import RememberPipeline
from ravenloom.settings import Settings

router = APIRouter(prefix="/api/v1/remember", tags=["remember"])


def get_pipeline(
    db: Session = Depends(get_db),
    llm: KnowledgeLLM = Depends(get_llm_dependency),
    settings: Settings = Depends(get_settings_dependency),
) -> RememberPipeline:
    return RememberPipeline(db, llm, settings)


@router.post("/preview", response_model=schemas.RememberPreview, status_code=201)
async def preview_remember(
    request: schemas.RememberPreviewRequest,
    user_id: UUID = Depends(get_current_user_id),
    pipeline: RememberPipeline = Depends(get_pipeline),
):
    """
    Preview what a statement would add to a scope.

    Safe to retry: a failed preview persists nothing.
    """
    preview = pipeline.preview(
        request.scope_id,
        request.statement,
        user_id,
        source_url=request.source_url,
    )
    return schemas.RememberPreview.model_validate(preview)


@router.get("/{preview_id}", response_model=schemas.RememberPreview)
async def get_preview(
    preview_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    pipeline: RememberPipeline = Depends(get_pipeline),
):
    return schemas.RememberPreview.model_validate(pipeline.get_preview(preview_id, user_id))


@router.post("/{preview_id}/confirm", response_model=schemas.RememberResult)
async def confirm_remember(
    preview_id: UUID,
    request: Optional[schemas.RememberConfirmRequest] = None,
    user_id: UUID = Depends(get_current_user_id),
    pipeline: RememberPipeline = Depends(get_pipeline),
):
    """
    Materialize a drafting preview.

    Not idempotent: a repeated confirm fails with invalid_preview_state, so
    check the preview before retrying.
    """
    request = request or schemas.RememberConfirmRequest()
    result = pipeline.confirm(
        preview_id,
        user_id,
        skip_conflict_ids=request.skip_conflict_ids,
        decisions=request.decisions,
    )
    return schemas.RememberResult.model_validate(result)


@router.post("/{preview_id}/cancel", response_model=schemas.RememberPreview)
async def cancel_remember(
    preview_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    pipeline: RememberPipeline = Depends(get_pipeline),
):
    return schemas.RememberPreview.model_validate(pipeline.cancel(preview_id, user_id))
