"""
Request id propagation.

Each HTTP request gets an id, taken from X-Request-ID / X-Correlation-ID when
the caller supplies one. It is stored in the logging context variable and on
``request.state.request_id`` so error bodies can echo it back.
"""

import uuid
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from voicedemo.shared.logging import correlation_id_var

REQUEST_ID_HEADER = "X-Request-ID"
CORRELATION_ID_HEADER = "X-Correlation-ID"


def get_correlation_id() -> str | None:
    """Get the current correlation ID from context."""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def request_id_for(request: Request) -> str:
    """Request id of ``request``, falling back to the context value."""
    return (
        getattr(request.state, "request_id", None)
        or get_correlation_id()
        or generate_correlation_id()
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Extract or generate a request id and echo it on the response."""

    def __init__(
        self,
        app: Any,
        header_name: str = REQUEST_ID_HEADER,
        generator: Callable[[], str] = generate_correlation_id,
    ) -> None:
        super().__init__(app)
        self.header_name = header_name
        self.generator = generator

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        correlation_id = (
            request.headers.get(self.header_name)
            or request.headers.get(CORRELATION_ID_HEADER)
            or self.generator()
        )
        request.state.request_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
            response.headers[self.header_name] = correlation_id
            return response
        finally:
            correlation_id_var.reset(token)
