"""
Billing API routes.

Gateway-facing and operator surface:
- POST /api/billing/webhook: gateway notifications (signature verified)
- POST /api/billing/outcome: gateway-neutral outcome push (cron secret)
- POST /api/billing/payments: confirmed first payment -> paid subscription (cron secret)
- POST /api/billing/reconcile: run one renewal sweep (cron secret)
- GET  /api/billing/renewals: renewal outlook (cron secret)
- POST /api/billing/subscriptions/{id}/reinstate: lift a suspension (cron secret)
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from entitlement_engine.api.deps import (
    get_services,
    require_cron_secret,
    require_gateway,
    require_reconciler,
)
from entitlement_engine.api.subscriptions import SubscriptionResponse
from entitlement_engine.core.container import EngineServices
from entitlement_engine.core.logging import log_event
from entitlement_engine.features.billing.gateway import OutcomeStatus


router = APIRouter(prefix="/billing", tags=["billing"])


class OutcomeRequest(BaseModel):
    gateway_reference_id: str
    status: OutcomeStatus
    detail: Optional[str] = None


class SweepItemResponse(BaseModel):
    subscription_id: Optional[int] = None
    user_id: Optional[str] = None
    action: str
    outcome: str
    detail: Optional[str] = None


class SweepReportResponse(BaseModel):
    started_at: str
    finished_at: Optional[str] = None
    trigger: str
    status: str
    counters: Dict[str, int]
    items: List[SweepItemResponse]


class PaymentRequest(BaseModel):
    user_id: str
    plan_id: str
    reference: Optional[str] = None


class ReinstateRequest(BaseModel):
    expires_at: Optional[datetime] = None


@router.post("/webhook", response_model=SweepItemResponse)
async def billing_webhook(request: Request, services: EngineServices = Depends(get_services)):
    """
    Handle a gateway notification.

    Idempotent: a repeated notification for an outcome already applied is
    acknowledged and ignored.

    Errors:
        400: Invalid signature or payload
        503: Gateway not configured
    """
    gateway = require_gateway(services)
    reconciler = require_reconciler(services)
    body = await request.body()
    outcome = gateway.parse_webhook(dict(request.headers), body)
    item = reconciler.apply_outcome(outcome.gateway_reference_id, outcome.status, detail=outcome.detail)
    log_event(
        "info",
        "[billing] webhook processed",
        user_id=item.user_id,
        subscription_id=item.subscription_id,
        event_type="billing.webhook",
        extra={"gateway_reference_id": outcome.gateway_reference_id, "status": outcome.status.value, "outcome": item.outcome},
    )
    return item.to_dict()


@router.post("/outcome", response_model=SweepItemResponse, dependencies=[Depends(require_cron_secret)])
def push_outcome(request: OutcomeRequest, services: EngineServices = Depends(get_services)):
    reconciler = require_reconciler(services)
    item = reconciler.apply_outcome(request.gateway_reference_id, request.status, detail=request.detail)
    return item.to_dict()


@router.post("/payments", response_model=SubscriptionResponse, dependencies=[Depends(require_cron_secret)])
def confirm_payment(request: PaymentRequest, services: EngineServices = Depends(get_services)):
    """Start a paid subscription for a confirmed first payment."""
    observation = f"payment {request.reference}" if request.reference else None
    sub = services.subscriptions.activate_paid(request.user_id, request.plan_id, observation=observation)
    return SubscriptionResponse.from_subscription(sub)


@router.post("/reconcile", response_model=SweepReportResponse, dependencies=[Depends(require_cron_secret)])
def reconcile(request: Request, services: EngineServices = Depends(get_services)):
    """Cron-style trigger for one sweep (serialized with the in-process scheduler)."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        report = scheduler.run_once(trigger="http")
    else:
        report = require_reconciler(services).run_sweep(trigger="http")
    return report.to_dict()


@router.get("/renewals", dependencies=[Depends(require_cron_secret)])
def renewal_outlook(
    days: int = Query(7, ge=1, le=90),
    services: EngineServices = Depends(get_services),
) -> Dict[str, Any]:
    return require_reconciler(services).renewal_outlook(days=days)


@router.post(
    "/subscriptions/{subscription_id}/reinstate",
    response_model=SubscriptionResponse,
    dependencies=[Depends(require_cron_secret)],
)
def reinstate_subscription(
    subscription_id: int,
    request: Optional[ReinstateRequest] = None,
    services: EngineServices = Depends(get_services),
):
    expires_at = request.expires_at if request else None
    result = services.subscriptions.reinstate(subscription_id, expires_at=expires_at)
    return SubscriptionResponse.from_subscription(result.after)
