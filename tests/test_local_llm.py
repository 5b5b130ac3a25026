"""
Tests for the Ollama-backed LLM client and the KnowledgeLLM built on it.
"""
from types import SimpleNamespace

import httpx
import pytest
from tenacity import wait_none

from ravenloom.errors import LLMUnavailable
from ravenloom.llm.base import AnswerDraft, FactContext, ObjectiveBrief, QAPair
from ravenloom.llm.local_llm import (
    LocalLlmClient,
    _extract_content,
    _extract_json,
    _parse_json,
    resolve_ollama_base_url,
)
from ravenloom.llm.ollama_knowledge import OllamaKnowledgeLLM
from ravenloom.resilience import ServiceCircuitBreaker


class DummyOllamaClient:
    """Returns queued chat contents in order; records every call."""

    def __init__(self, *contents):
        self.contents = list(contents)
        self.calls = []

    def chat(self, **params):
        self.calls.append(params)
        content = self.contents.pop(0)
        if isinstance(content, Exception):
            raise content
        return SimpleNamespace(message=SimpleNamespace(content=content))


def _client(*contents):
    return LocalLlmClient(model="test-model", base_url="http://ollama.test:11434", client=DummyOllamaClient(*contents))


def _knowledge(*contents, threshold=5, attempts=1):
    breaker = ServiceCircuitBreaker("llm-test", failure_threshold=threshold, recovery_timeout=60)
    return OllamaKnowledgeLLM(_client(*contents), retries=1, attempts=attempts, breaker=breaker, wait=wait_none())


class TestResponseParsing:
    def test_thinking_and_fences_are_stripped(self):
        text = '<think>considering</think>\n```json\n{"facts": []}\n```'

        assert _extract_json(text) == '{"facts": []}'

    def test_json_embedded_in_prose(self):
        assert _parse_json('Here you go: {"answer": "yes", "confidence": 0.9} hope it helps') == {
            "answer": "yes",
            "confidence": 0.9,
        }
        assert _parse_json("no json at all") is None

    def test_content_from_dict_or_object(self):
        assert _extract_content({"message": {"content": "hi"}}) == "hi"
        assert _extract_content(SimpleNamespace(message=SimpleNamespace(content="hello"))) == "hello"
        assert _extract_content(SimpleNamespace(message=None)) == ""

    def test_base_url_resolution(self, monkeypatch):
        monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434")

        assert resolve_ollama_base_url("http://configured:11434") == "http://configured:11434"
        assert resolve_ollama_base_url() == "http://gpu-box:11434"


class TestLocalLlmClient:
    def test_chat_parameters(self):
        client = _client("Plain answer")

        assert client.generate_text([{"role": "user", "content": "Hi"}]) == "Plain answer"

        params = client.client.calls[0]
        assert params["model"] == "test-model"
        assert params["options"] == {"temperature": 0.1, "num_predict": 2000}
        assert "format" not in params

    def test_empty_text_is_an_error(self):
        with pytest.raises(ValueError):
            _client("<think>hmm</think>").generate_text([{"role": "user", "content": "Hi"}])

    def test_pydantic_retry_after_invalid_output(self):
        client = _client('{"answer": "Yes"}', '{"answer": "Yes", "confidence": 0.8}')

        draft = client.generate_pydantic([{"role": "user", "content": "Q"}], AnswerDraft, retries=1)

        assert draft == AnswerDraft(answer="Yes", confidence=0.8)
        assert len(client.client.calls) == 2
        assert client.client.calls[1]["messages"][-1]["content"].startswith("Return JSON")
        assert client.client.calls[0]["format"] == AnswerDraft.model_json_schema()

    def test_pydantic_gives_up_after_retries(self):
        client = _client("not json", "still not json")

        with pytest.raises(ValueError):
            client.generate_pydantic([{"role": "user", "content": "Q"}], AnswerDraft, retries=1)


class TestOllamaKnowledgeLLM:
    def test_extract_facts_drops_unknown_keys(self):
        llm = _knowledge(
            '{"facts": [{"content": "The API rate limit is 100/min", "entity_name": "API",'
            ' "attribute": "rate limit", "value": "100/min", "confidence": 0.9, "reasoning": "stated"}]}'
        )

        facts = llm.extract_facts("Our API rate limit is 100/min")

        assert len(facts) == 1
        assert facts[0].key == ("api", "rate limit")
        assert facts[0].confidence == 0.9

    def test_answer_question_sends_facts(self):
        llm = _knowledge('{"answer": "100/min", "confidence": 0.9, "followups": ["Per user?"]}')

        draft = llm.answer_question(
            "What is the rate limit?", [FactContext(content="The API rate limit is 100/min", category="technical")]
        )

        assert draft.followups == ["Per user?"]
        prompt = llm.client.client.calls[0]["messages"]
        assert any("[technical] The API rate limit is 100/min" in m["content"] for m in prompt)

    def test_question_text_is_reduced_to_one_line(self):
        llm = _knowledge('1. "Which team owns invoicing?"\n2. Another question')

        question = llm.generate_replacement(
            ObjectiveBrief(title="Billing"), "Too vague?", "vague", [], [QAPair("Who bills?", "Finance")]
        )

        assert question == "Which team owns invoicing?"

    def test_learning_questions_are_trimmed_to_count(self):
        llm = _knowledge('{"questions": ["First?", " ", "Second?", "Third?"]}')

        questions = llm.generate_learning_questions(ObjectiveBrief(title="Billing"), [], 2, is_initial=True)

        assert questions == ["First?", "Second?"]

    def test_transport_failure_is_unavailable(self):
        llm = _knowledge(httpx.ConnectError("connection refused"))

        with pytest.raises(LLMUnavailable) as exc_info:
            llm.summarize("Platform", [])

        assert exc_info.value.retryable is True

    def test_unusable_output_is_unavailable(self):
        llm = _knowledge('{"action": "followup"}', '{"action": "followup"}')

        with pytest.raises(LLMUnavailable):
            llm.decide_next_step(ObjectiveBrief(title="Billing"), QAPair("Q?", "A"), [], True)

    def test_open_circuit_fails_fast(self):
        llm = _knowledge(httpx.ReadTimeout("timed out"), threshold=1)

        with pytest.raises(LLMUnavailable):
            llm.summarize("Platform", [])
        with pytest.raises(LLMUnavailable) as exc_info:
            llm.summarize("Platform", [])

        assert "circuit open" in exc_info.value.message
        assert 1 <= exc_info.value.retry_after_seconds <= 60
        assert len(llm.client.client.calls) == 1

    def test_transient_failure_is_retried(self):
        llm = _knowledge(httpx.ConnectError("connection reset"), "Covers billing.", attempts=2)

        assert llm.summarize("Billing", []) == "Covers billing."
        assert len(llm.client.client.calls) == 2
        assert llm.breaker.state == "closed"

    def test_unusable_output_is_not_retried_as_transport(self):
        llm = _knowledge("", attempts=3)

        with pytest.raises(LLMUnavailable):
            llm.summarize("Billing", [])

        assert len(llm.client.client.calls) == 1
