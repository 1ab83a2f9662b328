"""
Request correlation for the TaskGrid API.

``RequestIDMiddleware`` gives every call an id (the client's ``X-Request-ID``
when it sends one) and echoes it on the response.  While the request runs the
id sits in a ContextVar, so ``RequestIdFilter`` can stamp it onto every log
record the scheduler emits on that request's behalf.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

_current_request_id: ContextVar[Optional[str]] = ContextVar("taskgrid_request_id", default=None)


def get_request_id() -> Optional[str]:
    """Id of the request being served, or None outside a request."""
    return _current_request_id.get()


class RequestIdFilter(logging.Filter):
    """Copy the current request id onto log records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = _current_request_id.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s failed", request.method, request.url.path)
            raise
        finally:
            _current_request_id.reset(token)

        response.headers[self.header_name] = request_id
        logger.debug(
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                "request_id": request_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return response
