"""
FastAPI dependencies shared by the routers.

Provides:
- get_current_user_id: The calling principal from the trusted X-User-Id header
- get_llm_dependency: The KnowledgeLLM capability (overridable in tests)
- get_settings_dependency: Process settings
"""

import uuid
from typing import Optional

from fastapi import Header

from ravenloom.errors import AuthenticationError
from ravenloom.llm import KnowledgeLLM, get_llm
from ravenloom.observability.logging import set_request_context
from ravenloom.settings import Settings, get_settings


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> uuid.UUID:
    """
    Resolve the calling user.

    Session issuance happens upstream; the gateway forwards the
    authenticated user id in ``X-User-Id``.

    Raises:
        AuthenticationError: Header missing or not a UUID
    """
    if not x_user_id:
        raise AuthenticationError(message="Missing X-User-Id header")
    try:
        user_id = uuid.UUID(x_user_id.strip())
    except ValueError as exc:
        raise AuthenticationError(
            message="X-User-Id must be a UUID",
            code="invalid_principal",
        ) from exc
    set_request_context(user_id=str(user_id))
    return user_id


def get_llm_dependency() -> KnowledgeLLM:
    return get_llm()


def get_settings_dependency() -> Settings:
    return get_settings()
