"""
Error taxonomy for the knowledge core and its FastAPI handlers.

Every error carries a stable ``code`` and a human ``message``. State-machine
violations and unresolved ids are terminal for the caller; ``LLMUnavailable``
is the only retryable error.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class KnowledgeError(Exception):
    """Base class for errors raised by the knowledge services."""

    code = "knowledge_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotFound(KnowledgeError):
    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class InvalidParent(KnowledgeError):
    code = "invalid_parent"
    status_code = 409


class InvalidPreviewState(KnowledgeError):
    code = "invalid_preview_state"
    status_code = 409


class PreviewExpired(KnowledgeError):
    code = "preview_expired"
    status_code = 410


class UnresolvedContradiction(KnowledgeError):
    """A contradiction reached Confirm without an explicit decision."""

    code = "unresolved_contradiction"
    status_code = 409

    def __init__(self, message: str, existing_fact_ids=None):
        self.existing_fact_ids = list(existing_fact_ids or [])
        super().__init__(message)


class StalePreview(KnowledgeError):
    """The facts a preview was judged against changed before Confirm."""

    code = "stale_preview"
    status_code = 409


class NotAnswered(KnowledgeError):
    code = "not_answered"
    status_code = 409


class InvalidQuestionState(KnowledgeError):
    code = "invalid_question_state"
    status_code = 409


class InvalidObjectiveTransition(KnowledgeError):
    code = "invalid_objective_transition"
    status_code = 409


class QuestionBudgetExhausted(KnowledgeError):
    code = "question_budget_exhausted"
    status_code = 409


class ConfirmationRequired(KnowledgeError):
    code = "confirmation_required"
    status_code = 400


class PermissionDenied(KnowledgeError):
    code = "permission_denied"
    status_code = 403


class LLMUnavailable(KnowledgeError):
    """The LLM capability timed out, failed, or returned unusable output."""

    code = "llm_unavailable"
    status_code = 503
    retryable = True
    retry_after_seconds = 30


class AuthenticationError(Exception):
    """Raised when the calling principal cannot be identified."""

    def __init__(self, message: str = "Authentication required", code: str = "missing_principal"):
        self.message = message
        self.code = code
        super().__init__(self.message)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers for knowledge and authentication errors.

    Args:
        app: The FastAPI application
    """

    @app.exception_handler(KnowledgeError)
    async def knowledge_error_handler(
        request: Request,
        exc: KnowledgeError,
    ) -> JSONResponse:
        """Map a KnowledgeError to its status code and JSON body."""
        headers = None
        if isinstance(exc, LLMUnavailable):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        content = {
            "error": exc.code,
            "message": exc.message,
            "retryable": exc.retryable,
        }
        if isinstance(exc, UnresolvedContradiction):
            content["existing_fact_ids"] = [str(i) for i in exc.existing_fact_ids]
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(
        request: Request,
        exc: AuthenticationError,
    ) -> JSONResponse:
        """Handle AuthenticationError and return 401."""
        return JSONResponse(
            status_code=401,
            content={
                "error": exc.code,
                "message": exc.message,
                "retryable": False,
            },
        )
