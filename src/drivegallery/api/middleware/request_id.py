"""Request ID propagation for the media proxy.

Every HTTP request gets an ``X-Request-ID``: the client's value when it is
printable ASCII, otherwise a fresh UUID4. The ID is bound to a context
variable for log records, stored in ``request.state`` for the exception
handlers, and added to the response headers.

This is plain ASGI middleware so streamed image bodies pass through
without being re-wrapped.
"""

from __future__ import annotations

import contextvars
import logging
import re
import uuid

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

MAX_REQUEST_ID_LENGTH = 128

_PRINTABLE_ASCII = re.compile(r"^[\x21-\x7e]+$")

# Empty outside of a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)


def get_request_id() -> str:
    """Return the ID of the request being handled, or ``""``."""
    return request_id_var.get()


def _sanitize_request_id(header_value: str | None) -> str:
    """Accept a client ID if printable, truncated to 128 chars; otherwise mint one."""
    if header_value and _PRINTABLE_ASCII.match(header_value):
        return header_value[:MAX_REQUEST_ID_LENGTH]
    if header_value:
        logger.warning("Ignoring X-Request-ID with unprintable characters")
    return str(uuid.uuid4())


class RequestIdMiddleware:
    """ASGI middleware binding a request ID to each HTTP request.

    Examples
    --------
    >>> from fastapi import FastAPI
    >>> app = FastAPI()
    >>> app.add_middleware(RequestIdMiddleware)
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _sanitize_request_id(Headers(scope=scope).get(REQUEST_ID_HEADER))
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        token = request_id_var.set(request_id)
        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(token)


class RequestIdFilter(logging.Filter):
    """Adds ``request_id`` to every record; ``"-"`` outside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True
