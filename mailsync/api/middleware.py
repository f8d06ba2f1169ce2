import time
import uuid
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("middleware")

# Polled by health checks and scrapers; logged at debug only
QUIET_PATHS = {"/health", "/ready", "/metrics"}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request logging, request ids and per-route API metrics."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        path = request.url.path
        log = logger.debug if path in QUIET_PATHS else logger.info
        start_time = time.monotonic()

        try:
            response: Response = await call_next(request)
        except Exception as e:
            logger.error(f"[{request_id}] {request.method} {path} raised {type(e).__name__}: {e}")
            self._record(request, 500)
            raise

        duration = time.monotonic() - start_time
        log(f"[{request_id}] {request.method} {path} -> {response.status_code} in {duration:.3f}s")
        response.headers["X-Request-Id"] = request_id
        self._record(request, response.status_code)
        return response

    @staticmethod
    def _record(request: Request, status_code: int) -> None:
        # Route template keeps account ids out of the label set
        route = request.scope.get("route")
        MetricsCollector.increment_api_requests(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status_code=status_code,
        )
