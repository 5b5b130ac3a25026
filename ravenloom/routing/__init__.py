"""
Intent routing helpers.

Provides the deterministic question-shape check used by the Remember
pipeline to flag statements that should have been an Ask.
"""
from ravenloom.routing.intent import (
    QUESTION_SUGGESTION,
    StatementIntent,
    classify_statement,
)

__all__ = ["QUESTION_SUGGESTION", "StatementIntent", "classify_statement"]
