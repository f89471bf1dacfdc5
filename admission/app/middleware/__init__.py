"""Middleware package for the admission controller."""

from admission.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RequestIdMiddleware",
    "get_request_id",
]
