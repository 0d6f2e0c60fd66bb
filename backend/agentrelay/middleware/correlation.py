"""Request correlation for logs.

- X-Request-ID is echoed back (or generated) by asgi-correlation-id and lands
  on every log entry through the structlog processor chain
- X-Session-Id, when a client sends it, is bound into structlog contextvars
  for the lifetime of the request so route and service logs carry session_id
"""

import uuid

import structlog
from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI
from starlette.types import ASGIApp, Receive, Scope, Send

SESSION_HEADER = b"x-session-id"


class SessionContextMiddleware:
    """Bind the X-Session-Id request header into structlog contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        session_id = dict(scope.get("headers") or []).get(SESSION_HEADER)
        if not session_id:
            await self.app(scope, receive, send)
            return

        with structlog.contextvars.bound_contextvars(session_id=session_id.decode("latin-1")):
            await self.app(scope, receive, send)


def setup_correlation_middleware(app: FastAPI) -> None:
    """Add correlation and session-context middleware to the app.

    Args:
        app: FastAPI application instance
    """
    app.add_middleware(SessionContextMiddleware)
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name="X-Request-ID",
        generator=lambda: str(uuid.uuid4()),
        validator=None,  # Accept any format
    )


def get_correlation_id() -> str | None:
    """Current request's correlation ID, or None outside a request."""
    return correlation_id.get(None)


__all__ = ["SessionContextMiddleware", "get_correlation_id", "setup_correlation_middleware"]
