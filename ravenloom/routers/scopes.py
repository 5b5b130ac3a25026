"""
Scopes Router.

Provides REST endpoints for the scope tree:
- Team root initialization
- Project scope CRUD with cycle-checked reparenting
- Per-user private scopes coupled to public scopes
- Tree, visible-scope, path and children views
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ravenloom import schemas
from ravenloom.database import get_db
from ravenloom.dependencies import get_current_user_id, get_llm_dependency
from ravenloom.llm import KnowledgeLLM
from ravenloom.observability.logging import set_request_context
from ravenloom.services.scope_summaries import refresh_scope_summary
from ravenloom.stores import ScopeTree

router = APIRouter(prefix="/api/v1", tags=["scopes"])


@router.post("/teams/{team_id}/scopes/init", response_model=schemas.Scope)
async def initialize_team_scopes(
    team_id: UUID,
    request: schemas.TeamScopesInit,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Create the team root scope; returns the existing root on repeat calls."""
    set_request_context(team_id=str(team_id))
    return ScopeTree(db).initialize_team_scopes(team_id, request.team_name, created_by=user_id)


@router.get("/teams/{team_id}/scopes/tree", response_model=List[schemas.ScopeTreeNode])
async def get_scope_tree(
    team_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    nodes = ScopeTree(db).get_scope_tree(team_id, user_id)
    return [schemas.ScopeTreeNode.model_validate(node) for node in nodes]


@router.get("/teams/{team_id}/scopes/visible", response_model=List[schemas.Scope])
async def list_visible_scopes(
    team_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Public scopes of the team plus the caller's own private scopes."""
    return ScopeTree(db).resolve_visible_scopes(team_id, user_id)


@router.post("/scopes", response_model=schemas.Scope, status_code=201)
async def create_scope(
    request: schemas.ScopeCreate,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    set_request_context(team_id=str(request.team_id))
    return ScopeTree(db).create_scope(
        team_id=request.team_id,
        name=request.name,
        description=request.description,
        parent_scope_id=request.parent_scope_id,
        created_by=user_id,
    )


@router.get("/scopes/{scope_id}", response_model=schemas.Scope)
async def get_scope(
    scope_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ScopeTree(db).require_accessible(scope_id, user_id)


@router.patch("/scopes/{scope_id}", response_model=schemas.Scope)
async def update_scope(
    scope_id: UUID,
    request: schemas.ScopeUpdate,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Rename, describe or move a scope. ``parent_scope_id`` moves it only when sent."""
    tree = ScopeTree(db)
    tree.require_accessible(scope_id, user_id)
    changes = {"name": request.name, "description": request.description}
    if "parent_scope_id" in request.model_fields_set:
        changes["parent_scope_id"] = request.parent_scope_id
    return tree.update_scope(scope_id, **changes)


@router.delete("/scopes/{scope_id}", response_model=schemas.ScopeDeleted)
async def delete_scope(
    scope_id: UUID,
    confirm: bool = Query(default=False),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Delete a scope with its sub-scopes, coupled private scopes and knowledge."""
    tree = ScopeTree(db)
    tree.require_accessible(scope_id, user_id)
    return schemas.ScopeDeleted(deleted_scope_ids=tree.delete_scope(scope_id, confirm=confirm))


@router.get("/scopes/{scope_id}/path", response_model=schemas.ScopePath)
async def get_scope_path(
    scope_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    tree = ScopeTree(db)
    tree.require_accessible(scope_id, user_id)
    return schemas.ScopePath(scope_id=scope_id, path=tree.get_path(scope_id))


@router.get("/scopes/{scope_id}/children", response_model=List[schemas.Scope])
async def get_scope_children(
    scope_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Direct children with their summaries."""
    tree = ScopeTree(db)
    tree.require_accessible(scope_id, user_id)
    return tree.get_child_summaries(scope_id)


@router.post("/scopes/{scope_id}/private", response_model=schemas.Scope)
async def get_or_create_private_scope(
    scope_id: UUID,
    request: schemas.PrivateScopeCreate,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """The caller's private scope alongside ``scope_id``, created on first use."""
    tree = ScopeTree(db)
    coupled = tree.require_scope(scope_id)
    return tree.get_or_create_private_scope(
        team_id=coupled.team_id,
        owner_id=user_id,
        coupled_scope_id=coupled.id,
        owner_name=request.owner_name,
    )


@router.post("/scopes/{scope_id}/summary/refresh", response_model=schemas.Scope)
async def refresh_summary(
    scope_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    llm: KnowledgeLLM = Depends(get_llm_dependency),
):
    return refresh_scope_summary(db, llm, scope_id, user_id)
