"""
Subscription API routes.

- POST /api/subscriptions/signup: put the caller on the free plan
- GET  /api/subscriptions/current: the caller's current subscription
- GET  /api/subscriptions/history: every subscription row, oldest first
- POST /api/subscriptions/cancel: stop auto-renewal (access kept until expiry)
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from entitlement_engine.api.deps import get_services, get_user_id
from entitlement_engine.core.container import EngineServices
from entitlement_engine.core.errors import NotFoundError
from entitlement_engine.models.subscription import Subscription


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class SubscriptionResponse(BaseModel):
    id: int
    user_id: str
    plan_id: str
    state: str
    origin: str
    started_at: datetime
    expires_at: Optional[datetime] = None
    auto_renew: bool
    failed_attempts: int
    last_observation: Optional[str] = None
    superseded_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionResponse":
        return cls(
            id=sub.id,
            user_id=sub.user_id,
            plan_id=sub.plan_id,
            state=sub.state.value,
            origin=sub.origin.value,
            started_at=sub.started_at,
            expires_at=sub.expires_at,
            auto_renew=sub.auto_renew,
            failed_attempts=sub.failed_attempts,
            last_observation=sub.last_observation,
            superseded_by=sub.superseded_by,
            cancelled_at=sub.cancelled_at,
        )


class CancelResponse(BaseModel):
    subscription: SubscriptionResponse
    changed: bool


@router.post("/signup", response_model=SubscriptionResponse)
def signup(user_id: str = Depends(get_user_id), services: EngineServices = Depends(get_services)):
    return SubscriptionResponse.from_subscription(services.subscriptions.signup(user_id))


@router.get("/current", response_model=SubscriptionResponse)
def current_subscription(user_id: str = Depends(get_user_id), services: EngineServices = Depends(get_services)):
    sub = services.subscriptions.get_current_subscription(user_id)
    if sub is None:
        raise NotFoundError(f"User {user_id} has no subscription")
    return SubscriptionResponse.from_subscription(sub)


@router.get("/history", response_model=List[SubscriptionResponse])
def subscription_history(user_id: str = Depends(get_user_id), services: EngineServices = Depends(get_services)):
    return [SubscriptionResponse.from_subscription(sub) for sub in services.subscriptions.list_history(user_id)]


@router.post("/cancel", response_model=CancelResponse)
def cancel_subscription(user_id: str = Depends(get_user_id), services: EngineServices = Depends(get_services)):
    """
    Cancel the caller's subscription.

    Errors:
        404: No subscription
        409: Subscription cannot be cancelled from its current state
    """
    result = services.subscriptions.cancel(user_id)
    return CancelResponse(
        subscription=SubscriptionResponse.from_subscription(result.after),
        changed=result.applied,
    )
