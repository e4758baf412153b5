# aios/middleware/correlation.py
"""
Correlation ID Middleware
Every admin request and every agent execution carries a traceable correlation ID
that is injected into log records.
"""

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Iterator

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Context variable for correlation ID (safe across asyncio tasks)
correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='no-corr-id')


def get_correlation_id() -> str:
    """Get current correlation ID from context"""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID"""
    return f"corr-{uuid.uuid4().hex[:12]}"


@contextmanager
def correlation_scope(corr_id: str) -> Iterator[str]:
    """Bind a correlation ID for the duration of a block (used per execution)"""
    token = correlation_id_var.set(corr_id)
    try:
        yield corr_id
    finally:
        correlation_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Logging filter to inject correlation ID into log records"""

    def filter(self, record):
        record.correlation_id = get_correlation_id()
        record.iso_timestamp = datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%S.%f")
        return True


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware that ensures every admin request has a correlation ID.

    The ID is read from X-Correlation-ID when present, generated otherwise,
    and echoed back on the response.
    """

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next) -> Response:
        corr_id = request.headers.get(self.HEADER_NAME) or generate_correlation_id()

        with correlation_scope(corr_id):
            response = await call_next(request)
            response.headers[self.HEADER_NAME] = corr_id
            return response
