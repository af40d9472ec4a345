"""
Usage API routes.

- POST /api/usage/{feature}/increment: record consumption after a gated action
- GET  /api/usage: counters of the current (or given) period
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from entitlement_engine.api.deps import get_services, get_user_id
from entitlement_engine.core.container import EngineServices


router = APIRouter(prefix="/usage", tags=["usage"])


class IncrementRequest(BaseModel):
    delta: int = Field(1, ge=1)


class IncrementResponse(BaseModel):
    feature: str
    period_key: str
    count: int


class PeriodUsageResponse(BaseModel):
    user_id: str
    period_key: str
    usage: Dict[str, int]


@router.post("/{feature}/increment", response_model=IncrementResponse)
def increment_usage(
    feature: str,
    body: Optional[IncrementRequest] = None,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_user_id),
    services: EngineServices = Depends(get_services),
):
    """
    Add to the caller's counter for `feature` in the current period.

    Repeating a request with the same Idempotency-Key returns the count the
    first request produced without counting again.
    """
    delta = body.delta if body else 1
    period_key = services.meter.current_period_key()
    count = services.meter.increment(
        user_id,
        feature,
        period_key=period_key,
        delta=delta,
        idempotency_key=idempotency_key,
    )
    return IncrementResponse(feature=feature, period_key=period_key, count=count)


@router.get("", response_model=PeriodUsageResponse)
def get_usage(
    period_key: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$"),
    user_id: str = Depends(get_user_id),
    services: EngineServices = Depends(get_services),
):
    key = period_key or services.meter.current_period_key()
    return PeriodUsageResponse(
        user_id=user_id,
        period_key=key,
        usage=services.meter.get_period_usage(user_id, period_key=key),
    )
