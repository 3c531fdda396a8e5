"""Web interface for taskrelay.

This package provides the FastAPI HTTP boundary over the lifecycle engine
and the in-process SSE connection hub that delivers lifecycle events to
connected dispatchers, workers and administrators.
"""

from __future__ import annotations

from taskrelay.web.app import create_app
from taskrelay.web.middleware import RequestLoggingMiddleware
from taskrelay.web.transport import ConnectionHub, DeliveryError, SSEMessage

__all__ = [
    # Application
    "create_app",
    "RequestLoggingMiddleware",
    # Transport
    "ConnectionHub",
    "DeliveryError",
    "SSEMessage",
]
