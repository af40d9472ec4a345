import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

# Load env from entitlement_engine/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from entitlement_engine.api import billing, entitlements, health, metrics, plans, subscriptions, usage
from entitlement_engine.core.config import settings, validate_config
from entitlement_engine.core.container import EngineServices, build_services
from entitlement_engine.core.database import create_all_tables
from entitlement_engine.core.errors import register_error_handlers
from entitlement_engine.core.logging import configure_logging
from entitlement_engine.core.middleware.metrics import MetricsMiddleware
from entitlement_engine.core.middleware.request_id import RequestIdMiddleware
from entitlement_engine.features.catalog.service import seed_plans
from entitlement_engine.workers.renewal_scheduler import RenewalScheduler

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("entitlements")
    logger.info("Starting entitlement engine...")
    app.state.startup_time = time.time()

    create_all_tables()
    seed_plans()

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services()
    services: EngineServices = app.state.services

    scheduler = None
    run_scheduler = app.state.start_scheduler
    if run_scheduler is None:
        run_scheduler = services.settings.RECONCILER_ENABLED
    if run_scheduler and services.reconciler is not None:
        scheduler = RenewalScheduler(services.reconciler, services.settings.RECONCILE_INTERVAL_SECONDS)
        scheduler.start()
    app.state.scheduler = scheduler

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        services.close()
        logger.info("Stopping entitlement engine...")


def create_app(services: Optional[EngineServices] = None, start_scheduler: Optional[bool] = None) -> FastAPI:
    app = FastAPI(title="Entitlement Engine", lifespan=lifespan)
    app.state.services = services
    app.state.start_scheduler = start_scheduler
    app.state.scheduler = None

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    register_error_handlers(app)

    app.include_router(entitlements.router, prefix="/api", tags=["entitlements"])
    app.include_router(usage.router, prefix="/api", tags=["usage"])
    app.include_router(subscriptions.router, prefix="/api", tags=["subscriptions"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(plans.router, prefix="/api", tags=["plans"])
    app.include_router(health.root_router, tags=["health"])
    app.include_router(metrics.router, tags=["metrics"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("entitlement_engine.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
