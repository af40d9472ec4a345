"""
Entitlement API routes.

- GET /api/entitlements/{feature}: decision for one feature
- GET /api/entitlements: status of every feature for the caller
"""
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from entitlement_engine.api.deps import get_services, get_user_id
from entitlement_engine.core.container import EngineServices
from entitlement_engine.core.errors import StorageUnavailableError, error_body
from entitlement_engine.core.logging import get_request_id


router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class EntitlementResponse(BaseModel):
    allowed: bool
    feature: str
    plan_id: str
    limit: Optional[Union[bool, int]] = None
    usage: int
    remaining: int
    upgrade_hint: Optional[str] = None


class EntitlementSummaryResponse(BaseModel):
    user_id: str
    plan_id: str
    plan_name: str
    subscription_id: Optional[int] = None
    subscription_state: Optional[str] = None
    period_key: str
    features: Dict[str, EntitlementResponse]
    needs_upgrade: bool
    blocked_features: List[str]


def _fail_closed(exc: StorageUnavailableError, feature: Optional[str] = None) -> JSONResponse:
    """Storage trouble is a denial, never an allow."""
    content: Dict[str, Any] = {"allowed": False, **error_body(exc.code, exc.message, get_request_id())}
    if feature:
        content["feature"] = feature
    return JSONResponse(status_code=exc.status_code, content=content)


@router.get("/{feature}", response_model=EntitlementResponse)
def check_entitlement(
    feature: str,
    user_id: str = Depends(get_user_id),
    services: EngineServices = Depends(get_services),
):
    """
    Can the caller use `feature` right now?

    Errors:
        400: Unknown feature
        503: Storage unavailable (body carries allowed=false)
    """
    try:
        decision = services.resolver.check_and_describe(user_id, feature)
    except StorageUnavailableError as exc:
        return _fail_closed(exc, feature)
    return decision.to_dict()


@router.get("", response_model=EntitlementSummaryResponse)
def list_entitlements(
    user_id: str = Depends(get_user_id),
    services: EngineServices = Depends(get_services),
):
    try:
        return services.resolver.describe_all(user_id)
    except StorageUnavailableError as exc:
        return _fail_closed(exc)
