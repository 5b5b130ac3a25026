"""
Ask/Remember intent heuristic.

Decides whether a Remember statement reads like a question. It is pattern
based only: routing between Ask and Remember has to be instant, so no LLM
round trip is involved.

Usage:
    from ravenloom.routing import classify_statement

    result = classify_statement("What is our API rate limit?")
    assert result.is_question
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern

QUESTION_SUGGESTION = "This looks like a question. Would you like to Ask instead?"

INTERROGATIVES = (
    "what", "when", "where", "who", "why", "how",
    "is", "are", "do", "does", "can", "could", "would", "should",
)


@dataclass
class PatternRule:
    """A question-shape rule."""

    name: str
    pattern: Pattern[str]


QUESTION_RULES: List[PatternRule] = [
    PatternRule("trailing_question_mark", re.compile(r"\?\s*$")),
    PatternRule(
        "leading_interrogative",
        re.compile(r"^\W*(?:%s)\b" % "|".join(INTERROGATIVES), re.IGNORECASE),
    ),
]


@dataclass
class StatementIntent:
    """
    Result of classifying a Remember statement.

    Attributes:
        is_question: True when the statement looks like a question
        matched_rule: Name of the rule that fired, if any
        suggestion: User-facing hint to switch to Ask
    """

    is_question: bool
    matched_rule: Optional[str] = None
    suggestion: Optional[str] = None


def classify_statement(statement: str) -> StatementIntent:
    text = statement.strip()
    for rule in QUESTION_RULES:
        if rule.pattern.search(text):
            return StatementIntent(True, rule.name, QUESTION_SUGGESTION)
    return StatementIntent(False)
