import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware

from entitlement_engine.core.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    normalize_path,
)


logger = logging.getLogger("entitlements.metrics")

_SKIP_PATHS = {"/metrics"}


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests and observe latency per normalized route."""

    async def dispatch(self, request, call_next):
        if request.url.path in _SKIP_PATHS:
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        _observe(request.method.upper(), normalize_path(request.url.path), response.status_code, time.perf_counter() - start)
        return response


def _observe(method: str, path: str, status: int, elapsed: float) -> None:
    try:
        http_requests_total.inc(labels={"method": method, "path": path, "status": str(status)})
        http_request_duration_seconds.observe(elapsed, labels={"method": method, "path": path})
    except ValueError:
        logger.debug("metrics.observe_failed", exc_info=True, extra={"path": path})
