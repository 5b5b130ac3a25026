"""
LLM capability for the knowledge services.

Services receive a ``KnowledgeLLM``; production wiring builds an
``OllamaKnowledgeLLM`` from Settings through ``get_llm``.
"""
from typing import Optional

from ravenloom.llm.base import (
    AnswerDraft,
    FactContext,
    KnowledgeLLM,
    NextStep,
    ObjectiveBrief,
    QAPair,
)
from ravenloom.llm.local_llm import LocalLlmClient
from ravenloom.llm.ollama_knowledge import OllamaKnowledgeLLM

_llm: Optional[KnowledgeLLM] = None


def get_llm() -> KnowledgeLLM:
    """Get the process-wide KnowledgeLLM, built from Settings on first use."""
    global _llm
    if _llm is None:
        from ravenloom.settings import get_settings

        settings = get_settings()
        client = LocalLlmClient(
            model=settings.llm_model,
            base_url=settings.ollama_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_seconds,
        )
        _llm = OllamaKnowledgeLLM(
            client,
            retries=settings.llm_max_retries,
            attempts=settings.llm_transport_attempts,
        )
    return _llm


def reset_llm() -> None:
    """Drop the cached capability (for testing purposes)."""
    global _llm
    _llm = None


__all__ = [
    "AnswerDraft",
    "FactContext",
    "KnowledgeLLM",
    "LocalLlmClient",
    "NextStep",
    "ObjectiveBrief",
    "OllamaKnowledgeLLM",
    "QAPair",
    "get_llm",
    "reset_llm",
]
