"""
Scope summaries: an LLM digest of a scope's current facts, stored on the scope.
"""

import logging
import uuid

from sqlalchemy.orm import Session

from ravenloom.llm.base import FactContext, KnowledgeLLM
from ravenloom.models import Scope
from ravenloom.stores.fact_store import FactFilters, FactStore
from ravenloom.stores.scope_store import ScopeTree

logger = logging.getLogger(__name__)

SUMMARY_FACT_LIMIT = 50


def refresh_scope_summary(
    db: Session,
    llm: KnowledgeLLM,
    scope_id: uuid.UUID,
    user_id: uuid.UUID,
) -> Scope:
    """
    Regenerate a scope's summary from its current facts.

    A scope without facts gets an empty summary and no LLM call.
    """
    tree = ScopeTree(db)
    scope = tree.require_accessible(scope_id, user_id)
    facts = FactStore(db).query([scope.id], FactFilters(limit=SUMMARY_FACT_LIMIT))

    if not facts:
        return tree.update_scope(scope.id, summary="")

    summary = llm.summarize(scope.name, [FactContext.from_fact(f) for f in facts]).strip()
    logger.info("Refreshed summary of scope %s from %d facts", scope.id, len(facts))
    return tree.update_scope(scope.id, summary=summary)
