"""API endpoints package for the admission controller."""

from admission.app.api.limited import router as limited_router

__all__ = [
    "limited_router",
]
