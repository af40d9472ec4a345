"""Wiring of the engine's components (API, scheduler and CLI share this)."""

import logging
from dataclasses import dataclass
from typing import Optional

from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.features.billing.events import EventBus
from entitlement_engine.features.billing.gateway import GatewayAdapter
from entitlement_engine.features.billing.reconciler import RenewalReconciler
from entitlement_engine.features.billing.stripe_gateway import StripeGateway
from entitlement_engine.features.catalog.service import EntitlementCatalog
from entitlement_engine.features.entitlements.service import EntitlementResolver
from entitlement_engine.features.subscriptions.service import SubscriptionService
from entitlement_engine.features.subscriptions.state_machine import SubscriptionStateMachine
from entitlement_engine.features.usage.service import UsageMeter


logger = logging.getLogger("entitlements")


@dataclass
class EngineServices:
    settings: Settings
    catalog: EntitlementCatalog
    meter: UsageMeter
    state_machine: SubscriptionStateMachine
    subscriptions: SubscriptionService
    resolver: EntitlementResolver
    events: EventBus
    gateway: Optional[GatewayAdapter] = None
    reconciler: Optional[RenewalReconciler] = None

    def close(self) -> None:
        if self.reconciler is not None:
            self.reconciler.close()


def default_gateway(cfg: Settings) -> Optional[GatewayAdapter]:
    if not cfg.STRIPE_SECRET_KEY:
        logger.warning("Payment gateway not configured; renewals disabled")
        return None
    return StripeGateway(
        secret_key=cfg.STRIPE_SECRET_KEY,
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
        success_url=cfg.CHECKOUT_SUCCESS_URL,
        cancel_url=cfg.CHECKOUT_CANCEL_URL,
    )


def build_services(gateway: Optional[GatewayAdapter] = None, settings: Optional[Settings] = None) -> EngineServices:
    cfg = settings or default_settings
    catalog = EntitlementCatalog(ttl_seconds=cfg.CATALOG_CACHE_TTL_SECONDS, free_plan_id=cfg.FREE_PLAN_ID)
    meter = UsageMeter(max_retries=cfg.USAGE_INCREMENT_RETRIES)
    state_machine = SubscriptionStateMachine(cfg)
    subscriptions = SubscriptionService(catalog, state_machine, cfg)
    events = EventBus()
    gateway = gateway if gateway is not None else default_gateway(cfg)
    reconciler = None
    if gateway is not None:
        reconciler = RenewalReconciler(gateway, catalog, events, cfg, state_machine)
    return EngineServices(
        settings=cfg,
        catalog=catalog,
        meter=meter,
        state_machine=state_machine,
        subscriptions=subscriptions,
        resolver=EntitlementResolver(catalog, meter, subscriptions),
        events=events,
        gateway=gateway,
        reconciler=reconciler,
    )
