"""Core utilities for the admission controller."""

from admission.app.core.config import Settings, settings
from admission.app.core.logging import get_logger, setup_logging
from admission.app.core.retry import RetryPolicy

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
    "RetryPolicy",
]
