"""
Facts Router.

Read access to materialized knowledge and logical deletion:
- Current facts of a scope (optionally with its ancestors)
- Single fact and its supersession history
- Invalidate (forget) a fact
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ravenloom import schemas
from ravenloom.database import get_db
from ravenloom.dependencies import get_current_user_id
from ravenloom.stores import FactFilters, FactStore, ScopeTree

router = APIRouter(prefix="/api/v1", tags=["facts"])


def _require_fact(db: Session, fact_id: UUID, user_id: UUID):
    fact = FactStore(db).require(fact_id)
    ScopeTree(db).require_accessible(fact.scope_id, user_id)
    return fact


@router.get("/scopes/{scope_id}/facts", response_model=List[schemas.Fact])
async def list_scope_facts(
    scope_id: UUID,
    category: Optional[str] = None,
    entity_name: Optional[str] = None,
    attribute: Optional[str] = None,
    text: Optional[str] = None,
    include_ancestors: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """
    Current facts of a scope, newest first.

    Ancestor scopes (and the caller's private scopes along that path) are
    only read when ``include_ancestors`` is set.
    """
    tree = ScopeTree(db)
    tree.require_accessible(scope_id, user_id)
    scope_ids = tree.get_search_scope_ids(scope_id, user_id) if include_ancestors else [scope_id]
    return FactStore(db).query(
        scope_ids,
        FactFilters(
            category=category,
            entity_name=entity_name,
            attribute=attribute,
            text=text,
            limit=limit,
        ),
    )


@router.get("/facts/{fact_id}", response_model=schemas.Fact)
async def get_fact(
    fact_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return _require_fact(db, fact_id, user_id)


@router.get("/facts/{fact_id}/history", response_model=List[schemas.Fact])
async def get_fact_history(
    fact_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Every version of the fact's key, oldest first."""
    _require_fact(db, fact_id, user_id)
    return FactStore(db).history(fact_id)


@router.delete("/facts/{fact_id}", response_model=schemas.Fact)
async def invalidate_fact(
    fact_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    _require_fact(db, fact_id, user_id)
    return FactStore(db).invalidate(fact_id, user_id)
