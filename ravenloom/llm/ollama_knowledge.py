"""
KnowledgeLLM implementation backed by a local Ollama model.

Every call runs through the ``llm`` circuit breaker. Timeouts, transport
errors, an open circuit and unusable model output all surface as
``LLMUnavailable``.
"""

import logging
from typing import Callable, List, Optional, Sequence, TypeVar

import httpx
from ollama import RequestError, ResponseError
from pydantic import BaseModel, ConfigDict, Field
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ravenloom.errors import LLMUnavailable
from ravenloom.knowledge.types import ExtractedFact
from ravenloom.llm import prompts
from ravenloom.llm.base import AnswerDraft, FactContext, NextStep, ObjectiveBrief, QAPair
from ravenloom.llm.local_llm import LocalLlmClient
from ravenloom.resilience.circuit_breaker import (
    CircuitOpenError,
    ServiceCircuitBreaker,
    get_circuit_breaker,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Worth another attempt; bad requests and unusable output are not
TRANSIENT_ERRORS = (httpx.TransportError, ConnectionError)


class _FactPayload(ExtractedFact):
    # Models add stray keys; they are dropped rather than failing the call
    model_config = ConfigDict(extra="ignore")


class _ExtractionPayload(BaseModel):
    facts: List[_FactPayload] = Field(default_factory=list)


class _QuestionsPayload(BaseModel):
    questions: List[str] = Field(default_factory=list)


def _single_line(text: str) -> str:
    """Keep the first non-empty line, without list markers or quotes."""
    for line in text.splitlines():
        line = line.strip().lstrip("-*0123456789. ").strip().strip('"')
        if line:
            return line
    raise ValueError("Model returned no question text")


class OllamaKnowledgeLLM:
    """
    Knowledge capability over a LocalLlmClient.

    Args:
        client: Configured LocalLlmClient
        retries: Schema-repair retries per JSON call
        attempts: Attempts per call on transient transport errors
        breaker: Circuit breaker (defaults to the shared ``llm`` breaker)
        wait: tenacity wait strategy between transport attempts
    """

    def __init__(
        self,
        client: LocalLlmClient,
        retries: int = 1,
        attempts: int = 2,
        breaker: Optional[ServiceCircuitBreaker] = None,
        wait=None,
    ):
        self.client = client
        self.retries = retries
        self.attempts = attempts
        self.breaker = breaker or get_circuit_breaker("llm")
        self.wait = wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

    def _with_retries(self, operation: str, fn: Callable[[], R]) -> R:
        for attempt in Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=self.wait,
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("Retrying LLM call %s (attempt %d)", operation, attempt.retry_state.attempt_number)
                return fn()

    def _call(self, operation: str, fn: Callable[[], R]) -> R:
        try:
            with self.breaker:
                return self._with_retries(operation, fn)
        except CircuitOpenError as exc:
            logger.warning("LLM circuit open, skipping %s", operation)
            error = LLMUnavailable(f"LLM unavailable for {operation}: circuit open")
            error.retry_after_seconds = max(1, int(self.breaker.retry_after))
            raise error from exc
        except (httpx.HTTPError, RequestError, ResponseError, ConnectionError, ValueError) as exc:
            logger.warning("LLM call %s failed: %s", operation, exc)
            raise LLMUnavailable(f"LLM unavailable for {operation}: {exc}") from exc

    def extract_facts(self, statement: str) -> List[ExtractedFact]:
        payload = self._call(
            "extract_facts",
            lambda: self.client.generate_pydantic(
                prompts.build_extraction_messages(statement),
                _ExtractionPayload,
                retries=self.retries,
            ),
        )
        return [ExtractedFact.model_validate(fact.model_dump()) for fact in payload.facts]

    def answer_question(self, question: str, facts: Sequence[FactContext]) -> AnswerDraft:
        return self._call(
            "answer_question",
            lambda: self.client.generate_pydantic(
                prompts.build_answer_messages(question, facts),
                AnswerDraft,
                retries=self.retries,
            ),
        )

    def summarize(self, scope_name: str, facts: Sequence[FactContext]) -> str:
        return self._call(
            "summarize",
            lambda: self.client.generate_text(prompts.build_summary_messages(scope_name, facts)),
        )

    def generate_follow_up(self, question: str, answer: str, context: Optional[str] = None) -> str:
        return self._call(
            "generate_follow_up",
            lambda: _single_line(self.client.generate_text(
                prompts.build_follow_up_messages(question, answer, context)
            )),
        )

    def generate_learning_questions(
        self,
        objective: ObjectiveBrief,
        history: Sequence[QAPair],
        count: int,
        is_initial: bool = False,
    ) -> List[str]:
        payload = self._call(
            "generate_learning_questions",
            lambda: self.client.generate_pydantic(
                prompts.build_learning_questions_messages(objective, history, count, is_initial),
                _QuestionsPayload,
                retries=self.retries,
            ),
        )
        questions = [q.strip() for q in payload.questions if q and q.strip()]
        return questions[:count]

    def decide_next_step(
        self,
        objective: ObjectiveBrief,
        answered: QAPair,
        history: Sequence[QAPair],
        can_ask_more: bool,
    ) -> NextStep:
        return self._call(
            "decide_next_step",
            lambda: self.client.generate_pydantic(
                prompts.build_next_step_messages(objective, answered, history, can_ask_more),
                NextStep,
                retries=self.retries,
            ),
        )

    def generate_replacement(
        self,
        objective: ObjectiveBrief,
        rejected_question: str,
        reason: Optional[str],
        previously_rejected: Sequence[str],
        history: Sequence[QAPair],
    ) -> str:
        return self._call(
            "generate_replacement",
            lambda: _single_line(self.client.generate_text(
                prompts.build_replacement_messages(
                    objective, rejected_question, reason, previously_rejected, history
                )
            )),
        )
