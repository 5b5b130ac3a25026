"""Prompt builders for the local LLM. Each returns a chat message list."""

from typing import Dict, List, Optional, Sequence

from ravenloom.llm.base import FactContext, ObjectiveBrief, QAPair

Messages = List[Dict[str, str]]

EXTRACTION_SYSTEM_PROMPT = """
You extract atomic facts from a statement a team member wants the team to remember.

Rules:
- One fact per distinct piece of information.
- When the statement names a thing and a property of it, fill entity_name,
  attribute and value (e.g. "Our API rate limit is 100/min" ->
  entity_name "API", attribute "rate limit", value "100/min").
- Otherwise leave entity_name, attribute and value empty and keep the fact
  as a self-contained sentence in content.
- content is always a complete sentence that stands on its own.
- category is one of: general, process, technical, product, people, policy, faq.
- confidence is how sure you are the statement asserts this fact (0-1).
- Do not invent facts that are not in the statement.
""".strip()

ANSWER_SYSTEM_PROMPT = """
You answer questions for a team using only the knowledge provided.

Rules:
- If the knowledge does not contain the answer, say so plainly and give a
  low confidence.
- confidence reflects how well the knowledge supports the answer (0-1).
- followups are up to three short questions the asker might ask next.
""".strip()

SUMMARY_SYSTEM_PROMPT = """
Summarize what a team knows about one knowledge area in two or three
sentences, so people in other areas can tell whether it is relevant to them.
Return only the summary text.
""".strip()

FOLLOW_UP_SYSTEM_PROMPT = """
You help a team capture knowledge by asking good follow-up questions.
Given a question and its answer, ask ONE follow-up question that digs into
something the answer left open. Return only the question text.
""".strip()

LEARNING_SYSTEM_PROMPT = """
You run a research objective for a team by asking its members questions.
Ask specific, answerable questions that move the objective forward and do
not repeat what is already answered.
""".strip()


def _format_facts(facts: Sequence[FactContext]) -> str:
    if not facts:
        return "(no recorded knowledge)"
    lines = []
    for fact in facts:
        prefix = f"[{fact.category}] " if fact.category else ""
        lines.append(f"- {prefix}{fact.content}")
    return "\n".join(lines)


def _format_history(history: Sequence[QAPair]) -> str:
    if not history:
        return "(nothing asked yet)"
    lines = []
    for pair in history:
        lines.append(f"Q: {pair.question}")
        lines.append(f"A: {pair.answer or '(unanswered)'}")
    return "\n".join(lines)


def _format_objective(objective: ObjectiveBrief) -> str:
    if objective.description:
        return f"{objective.title}\n{objective.description}"
    return objective.title


def build_extraction_messages(statement: str) -> Messages:
    return [
        {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
        {"role": "user", "content": f"Statement:\n{statement}"},
    ]


def build_answer_messages(question: str, facts: Sequence[FactContext]) -> Messages:
    return [
        {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Knowledge:\n{_format_facts(facts)}\n\nQuestion: {question}",
        },
    ]


def build_summary_messages(scope_name: str, facts: Sequence[FactContext]) -> Messages:
    return [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Area: {scope_name}\n\nKnowledge:\n{_format_facts(facts)}",
        },
    ]


def build_follow_up_messages(question: str, answer: str, context: Optional[str] = None) -> Messages:
    content = f"Question: {question}\nAnswer: {answer}"
    if context:
        content = f"Context: {context}\n\n{content}"
    return [
        {"role": "system", "content": FOLLOW_UP_SYSTEM_PROMPT},
        {"role": "user", "content": content},
    ]


def build_learning_questions_messages(
    objective: ObjectiveBrief,
    history: Sequence[QAPair],
    count: int,
    is_initial: bool,
) -> Messages:
    stage = (
        "These are the first questions: start broad and cover the main areas."
        if is_initial
        else "Build on what has been answered so far."
    )
    return [
        {"role": "system", "content": LEARNING_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Objective:\n{_format_objective(objective)}\n\n"
                f"Asked so far:\n{_format_history(history)}\n\n"
                f"{stage}\nWrite exactly {count} questions."
            ),
        },
    ]


def build_next_step_messages(
    objective: ObjectiveBrief,
    answered: QAPair,
    history: Sequence[QAPair],
    can_ask_more: bool,
) -> Messages:
    budget = (
        "You may ask another question."
        if can_ask_more
        else "The question budget is spent: choose complete."
    )
    return [
        {"role": "system", "content": LEARNING_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Objective:\n{_format_objective(objective)}\n\n"
                f"Asked so far:\n{_format_history(history)}\n\n"
                f"Just answered:\nQ: {answered.question}\nA: {answered.answer}\n\n"
                "Decide the next step: 'followup' to dig into this answer, "
                "'new_question' to explore another part of the objective, or "
                "'complete' when the objective is sufficiently covered. "
                f"Include the question text unless you choose complete. {budget}"
            ),
        },
    ]


def build_replacement_messages(
    objective: ObjectiveBrief,
    rejected_question: str,
    reason: Optional[str],
    previously_rejected: Sequence[str],
    history: Sequence[QAPair],
) -> Messages:
    rejected = "\n".join(f"- {q}" for q in previously_rejected) or "(none)"
    return [
        {"role": "system", "content": LEARNING_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Objective:\n{_format_objective(objective)}\n\n"
                f"Asked so far:\n{_format_history(history)}\n\n"
                f"The team rejected this question: {rejected_question}\n"
                f"Reason: {reason or 'not given'}\n"
                f"Earlier rejected questions:\n{rejected}\n\n"
                "Ask ONE different question that avoids the problem. "
                "Return only the question text."
            ),
        },
    ]
