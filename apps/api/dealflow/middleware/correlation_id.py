from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from dealflow.context import bind_request_context, reset_request_context


CORRELATION_HEADER = "x-correlation-id"
REQUEST_ID_HEADER = "x-request-id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the caller's correlation id (or a fresh one) for the whole request.

    The id ends up on log records, audit entries, event envelopes, error bodies
    and the active server span, and is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        token = bind_request_context(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_context(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response
