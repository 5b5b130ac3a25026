"""
The LLM capability consumed by the knowledge services.

Services depend on the ``KnowledgeLLM`` protocol only. Implementations must
raise ``LLMUnavailable`` for every failure (timeout, transport, unusable
output) so callers can tell a retryable capability failure apart from a
validation error.
"""

from dataclasses import dataclass
from typing import List, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel, Field, model_validator

from ravenloom.knowledge.types import ExtractedFact


@dataclass(frozen=True)
class FactContext:
    """A fact as shown to the model."""

    content: str
    category: Optional[str] = None
    entity_name: Optional[str] = None
    attribute: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def from_fact(cls, fact) -> "FactContext":
        return cls(
            content=fact.content,
            category=fact.category,
            entity_name=fact.entity_name,
            attribute=fact.attribute,
            value=fact.value,
        )


@dataclass(frozen=True)
class QAPair:
    question: str
    answer: Optional[str] = None


@dataclass(frozen=True)
class ObjectiveBrief:
    title: str
    description: Optional[str] = None


class AnswerDraft(BaseModel):
    answer: str
    confidence: float = Field(ge=0.0, le=1.0)
    followups: List[str] = Field(default_factory=list)


class NextStep(BaseModel):
    """What the learning loop does after an answer."""

    action: Literal["followup", "new_question", "complete"]
    question: Optional[str] = None
    reasoning: Optional[str] = None

    @model_validator(mode="after")
    def question_required_to_ask(self):
        if self.action != "complete" and not (self.question and self.question.strip()):
            raise ValueError(f"action '{self.action}' needs question text")
        return self


class KnowledgeLLM(Protocol):
    def extract_facts(self, statement: str) -> List[ExtractedFact]:
        ...

    def answer_question(self, question: str, facts: Sequence[FactContext]) -> AnswerDraft:
        ...

    def summarize(self, scope_name: str, facts: Sequence[FactContext]) -> str:
        ...

    def generate_follow_up(self, question: str, answer: str, context: Optional[str] = None) -> str:
        ...

    def generate_learning_questions(
        self,
        objective: ObjectiveBrief,
        history: Sequence[QAPair],
        count: int,
        is_initial: bool = False,
    ) -> List[str]:
        ...

    def decide_next_step(
        self,
        objective: ObjectiveBrief,
        answered: QAPair,
        history: Sequence[QAPair],
        can_ask_more: bool,
    ) -> NextStep:
        ...

    def generate_replacement(
        self,
        objective: ObjectiveBrief,
        rejected_question: str,
        reason: Optional[str],
        previously_rejected: Sequence[str],
        history: Sequence[QAPair],
    ) -> str:
        ...
