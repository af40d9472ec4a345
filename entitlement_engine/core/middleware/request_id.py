import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from entitlement_engine.core.logging import latency_bucket_ms, log_event, request_id_ctx_var

# Upstream ids are echoed into logs and headers; anything odd gets replaced
_VALID_REQUEST_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")


def resolve_request_id(incoming):
    if incoming and _VALID_REQUEST_ID.fullmatch(incoming):
        return incoming
    return uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the duration of the request and log its completion."""

    def __init__(self, app, header_name: str = "x-request-id", user_header: str = "x-user-id"):
        super().__init__(app)
        self.header_name = header_name
        self.user_header = user_header

    async def dispatch(self, request, call_next):
        rid = resolve_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            log_event(
                "info",
                "request.complete",
                request_id=rid,
                user_id=request.headers.get(self.user_header),
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
