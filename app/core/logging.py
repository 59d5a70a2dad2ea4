"""
Logging configuration and request/sync-run correlation.

Context variables hold the current request id and sync run id so every log
line emitted while serving a request or executing a sync run can be traced
back to it.

Headers:
- X-Request-ID: Per-request unique identifier (echoed back on the response)
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
sync_run_id_ctx: ContextVar[str] = ContextVar("sync_run_id", default="")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [req=%(request_id)s run=%(sync_run_id)s] %(message)s"


def generate_id() -> str:
    """Generate a short unique ID suitable for logging."""
    return str(uuid.uuid4())[:12]


def get_request_id() -> str:
    return request_id_ctx.get() or "unknown"


@contextmanager
def sync_run_context(sync_run_id) -> Iterator[None]:
    """Tag log records emitted inside the block with a sync run id."""
    token = sync_run_id_ctx.set(str(sync_run_id))
    try:
        yield
    finally:
        sync_run_id_ctx.reset(token)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Extracts or generates X-Request-ID and exposes it via context."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_id()
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


class LogContextFilter(logging.Filter):
    """Injects request and sync run ids into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get() or "-"
        record.sync_run_id = sync_run_id_ctx.get() or "-"
        return True


def configure_logging(debug: bool = False):
    """Configure root logging once at startup."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(LogContextFilter())
    # httpx logs every request URL at INFO; keep it quieter
    logging.getLogger("httpx").setLevel(logging.WARNING)
