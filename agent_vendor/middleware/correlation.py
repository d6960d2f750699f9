"""Correlation ID middleware for request tracing."""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI


def setup_correlation_middleware(app: FastAPI) -> None:
    """Add X-Request-ID handling: echo the client's id or generate a UUID."""
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name="X-Request-ID",
        generator=lambda: str(uuid.uuid4()),
        validator=None,
        transformer=lambda a: a,
    )


def get_correlation_id() -> str | None:
    """Return the current request's correlation ID, or None outside a request."""
    return correlation_id.get(None)


__all__ = ["setup_correlation_middleware", "get_correlation_id"]
