"""Plan catalog API (read-only)."""
from typing import Dict, List, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from entitlement_engine.api.deps import get_services
from entitlement_engine.core.container import EngineServices


router = APIRouter(prefix="/plans", tags=["plans"])


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    is_paid: bool
    monthly_price: int
    currency: str
    is_default: bool
    limits: Dict[str, Union[bool, int]]  # -1 = unlimited
    labels: Dict[str, str]


@router.get("", response_model=List[PlanResponse])
def list_plans(services: EngineServices = Depends(get_services)):
    plans = []
    for plan in services.catalog.list_plans():
        limits = services.catalog.get_limits(plan.plan_id)
        plans.append(
            PlanResponse(
                plan_id=plan.plan_id,
                name=plan.name,
                is_paid=plan.is_paid,
                monthly_price=plan.monthly_price,
                currency=plan.currency,
                is_default=plan.is_default,
                limits={feature: limit.to_json() for feature, limit in limits.items()},
                labels={feature: limit.display() for feature, limit in limits.items()},
            )
        )
    return plans
