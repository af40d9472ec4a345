import logging

from fastapi import APIRouter, Request, Response
from sqlalchemy.exc import SQLAlchemyError

from entitlement_engine.core.metrics import METRICS, subscriptions_by_state


logger = logging.getLogger("entitlements.metrics")

router = APIRouter(tags=["metrics"])


def _refresh_subscription_gauges(request: Request) -> None:
    services = getattr(request.app.state, "services", None)
    if services is None:
        return
    try:
        stats = services.subscriptions.subscription_stats()
    except SQLAlchemyError:
        logger.warning("metrics.subscription_stats_unavailable")
        return
    for state, total in stats.items():
        subscriptions_by_state.set(total, labels={"state": state})


@router.get("/metrics")
def metrics_endpoint(request: Request):
    _refresh_subscription_gauges(request)
    payload = METRICS.export_prometheus()
    return Response(content=payload, media_type="text/plain")
