"""
HTTP middleware.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from config import RequestIdFilter

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs method, path, status and duration."""

    def __init__(self, app, request_id_filter: RequestIdFilter):
        super().__init__(app)
        self.request_id_filter = request_id_filter

    async def dispatch(self, request: Request, call_next):
        request_id = self.request_id_filter.new_request_id()
        start = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms)")
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            logger.exception(f"{request.method} {request.url.path} raised")
            raise
        finally:
            self.request_id_filter.clear()
