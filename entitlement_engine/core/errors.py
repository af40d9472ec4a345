"""Error taxonomy and FastAPI handlers for the entitlement engine.

Every AppError carries a stable `code` and the HTTP status it maps to. Handlers
render one body shape for all failures:
{"error": {"code", "message", "request_id"}, "detail": message}
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from entitlement_engine.core.logging import get_request_id


logger = logging.getLogger("entitlements.errors")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class UnknownPlanError(NotFoundError):
    code = "unknown_plan"
    status_code = 404

    def __init__(self, plan_id: str):
        super().__init__(f"Plan {plan_id!r} is not registered")
        self.plan_id = plan_id


class InvalidTransitionError(AppError):
    """A subscription event that the transition table does not allow."""
    code = "invalid_transition"
    status_code = 409

    def __init__(self, subscription_id: Optional[int], state: Optional[str], event: str):
        super().__init__(
            f"Event {event!r} is not allowed for subscription {subscription_id} in state {state!r}"
        )
        self.subscription_id = subscription_id
        self.state = state
        self.event = event


class ConcurrentModificationError(AppError):
    """Optimistic version check lost against another writer."""
    code = "concurrent_modification"
    status_code = 409


class PeriodClosedError(AppError):
    code = "period_closed"
    status_code = 409


class GatewayError(AppError):
    code = "gateway_error"
    status_code = 502


class GatewayTimeoutError(GatewayError):
    code = "gateway_timeout"
    status_code = 504


class GatewayRejectedError(GatewayError):
    code = "gateway_rejected"
    status_code = 402


class GatewayWebhookError(GatewayError):
    code = "invalid_webhook"
    status_code = 400


class StorageUnavailableError(AppError):
    code = "storage_unavailable"
    status_code = 503


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def error_body(code: str, message: str, request_id: Optional[str], **fields: Any) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    error.update(fields)
    return {"error": error, "detail": message}


def _respond(request_id: str, status_code: int, body: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers={"x-request-id": request_id})


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _respond(rid, exc.status_code, error_body(exc.code, exc.message, rid))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id_for(request)
    problems = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    logger.info("request.invalid", extra={"request_id": rid, "error_code": "invalid_request", "path": request.url.path})
    return _respond(rid, 422, error_body("invalid_request", "Request validation failed", rid, fields=problems))


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = str(exc.detail) if exc.detail else "HTTP error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(rid, exc.status_code, error_body(code, message, rid))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _respond(rid, 500, error_body("internal_error", "Unexpected error", rid))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
