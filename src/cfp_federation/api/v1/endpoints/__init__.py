"""API endpoint modules for version 1."""

from .events import router as events_router
from .federation import router as federation_router

__all__ = [
    "events_router",
    "federation_router",
]
