"""Middleware that binds a request id to every log line emitted while serving a request."""

from __future__ import annotations

import re

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ...logging_setup import request_context

REQUEST_ID_HEADER = "X-Request-ID"
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _incoming_id(request: Request) -> str | None:
    value = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    if value and _VALID_ID.match(value):
        return value
    return None


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Reuse a well-formed ``X-Request-ID`` or mint one, and echo it on the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        with request_context(_incoming_id(request)) as request_id:
            request.state.request_id = request_id
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


__all__ = ["REQUEST_ID_HEADER", "RequestIdMiddleware"]
