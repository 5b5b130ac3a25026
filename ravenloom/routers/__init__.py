from .ask import router as ask_router
from .facts import router as facts_router
from .health import router as health_router
from .objectives import router as objectives_router
from .questions import router as questions_router
from .remember import router as remember_router
from .scopes import router as scopes_router

__all__ = [
    "ask_router",
    "facts_router",
    "health_router",
    "objectives_router",
    "questions_router",
    "remember_router",
    "scopes_router",
]
