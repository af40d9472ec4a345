"""Shared FastAPI dependencies."""
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from entitlement_engine.core.container import EngineServices
from entitlement_engine.core.errors import AppError
from entitlement_engine.features.billing.reconciler import RenewalReconciler


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def get_services(request: Request) -> EngineServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Engine not initialised")
    return services


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """User id set by the upstream auth gateway."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def require_cron_secret(request: Request, x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret")) -> None:
    expected = get_services(request).settings.CRON_SECRET
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret")


def require_reconciler(services: EngineServices) -> RenewalReconciler:
    if services.reconciler is None:
        raise BillingDisabledError("Payment gateway is not configured")
    return services.reconciler


def require_gateway(services: EngineServices):
    if services.gateway is None:
        raise BillingDisabledError("Payment gateway is not configured")
    return services.gateway
