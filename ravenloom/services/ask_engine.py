"""
Ask: answer a question from the current facts a user can see in a scope.

Ask is a pure read. It never commits, so it is safe to retry and to poll.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from ravenloom.llm.base import FactContext, KnowledgeLLM
from ravenloom.models import Fact
from ravenloom.observability.metrics import ask_requests_total
from ravenloom.settings import Settings, get_settings
from ravenloom.stores.fact_store import FactStore
from ravenloom.stores.scope_store import ScopeTree

logger = logging.getLogger(__name__)


@dataclass
class AskResponse:
    answer: str
    confidence: float
    facts_used: List[Fact] = field(default_factory=list)
    suggested_followups: List[str] = field(default_factory=list)
    should_escalate: bool = False
    scope_ids: List[uuid.UUID] = field(default_factory=list)


def clamp_confidence(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return min(1.0, max(0.0, value))


class AskEngine:
    """
    Args:
        db: SQLAlchemy session
        llm: Capability that writes the answer
        settings: Optional settings override (retrieval limits, escalation threshold)
    """

    def __init__(self, db: Session, llm: KnowledgeLLM, settings: Optional[Settings] = None):
        self._llm = llm
        self._settings = settings or get_settings()
        self._scopes = ScopeTree(db)
        self._facts = FactStore(db)

    def search_scope_ids(
        self,
        scope_id: uuid.UUID,
        user_id: uuid.UUID,
        include_ancestors: bool = True,
        include_private: bool = True,
    ) -> List[uuid.UUID]:
        """Scopes an Ask reads from; nothing is inherited implicitly."""
        if include_ancestors:
            return self._scopes.get_search_scope_ids(scope_id, user_id, include_private)

        ids = [scope_id]
        if include_private:
            private = self._scopes.find_private_scope(user_id, scope_id)
            if private is not None:
                ids.append(private.id)
        return ids

    def ask(
        self,
        scope_id: uuid.UUID,
        question: str,
        user_id: uuid.UUID,
        include_ancestors: bool = True,
        include_private: bool = True,
    ) -> AskResponse:
        """
        Answer ``question`` from current facts.

        The LLM is called even when no fact is found, with an empty context,
        so it can say that nothing is known.

        Raises:
            NotFound: Scope does not exist
            PermissionDenied: Scope is another user's private scope
            LLMUnavailable: The answer could not be generated
        """
        question = question.strip()
        self._scopes.require_accessible(scope_id, user_id)
        scope_ids = self.search_scope_ids(scope_id, user_id, include_ancestors, include_private)

        facts = self._facts.search(
            scope_ids,
            question,
            limit=self._settings.ask_fact_limit,
            fallback_limit=self._settings.ask_recent_fallback_limit,
        )
        draft = self._llm.answer_question(question, [FactContext.from_fact(f) for f in facts])

        confidence = clamp_confidence(draft.confidence)
        should_escalate = confidence < self._settings.escalation_confidence_threshold
        ask_requests_total.labels(escalate=str(should_escalate).lower()).inc()
        logger.info(
            "Answered question in scope %s from %d facts (confidence %.2f)",
            scope_id,
            len(facts),
            confidence,
        )
        return AskResponse(
            answer=draft.answer,
            confidence=confidence,
            facts_used=facts[: self._settings.facts_used_limit],
            suggested_followups=[f for f in draft.followups if f and f.strip()][:3],
            should_escalate=should_escalate,
            scope_ids=scope_ids,
        )
