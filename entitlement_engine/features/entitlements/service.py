"""
entitlement_engine/features/entitlements/service.py

Entitlement resolution: may this user use this feature right now?

Handles:
- Effective plan resolution (usable subscription, else the free plan)
- Limit + usage evaluation into a structured decision
- Upgrade hints (cheapest paid plan that would allow the feature)
- Structured logs per decision

The resolver never mutates usage; callers increment through the UsageMeter
after performing the gated action.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError

from entitlement_engine.core.clock import normalize_now
from entitlement_engine.core.errors import StorageUnavailableError
from entitlement_engine.core.metrics import entitlement_checks_total
from entitlement_engine.features.catalog.service import FEATURE_DEFAULTS, EntitlementCatalog, validate_feature
from entitlement_engine.features.subscriptions.service import SubscriptionService
from entitlement_engine.features.usage.service import UsageMeter
from entitlement_engine.models.plan import LimitKind, LimitValue, Plan
from entitlement_engine.models.subscription import Subscription


logger = logging.getLogger("entitlements.resolver")


@dataclass(frozen=True)
class EntitlementDecision:
    allowed: bool
    feature: str
    plan_id: str
    limit: Optional[Any]  # None = unlimited, bool for on/off features, int for counts
    usage: int
    remaining: int  # -1 = unlimited
    upgrade_hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "feature": self.feature,
            "plan_id": self.plan_id,
            "limit": self.limit,
            "usage": self.usage,
            "remaining": self.remaining,
            "upgrade_hint": self.upgrade_hint,
        }


def evaluate(limit: LimitValue, usage: int) -> Tuple[bool, Optional[Any], int]:
    """Return (allowed, limit, remaining) for a resolved limit and current usage."""
    if limit.kind == LimitKind.UNLIMITED:
        return True, None, -1
    if limit.kind == LimitKind.BOOLEAN:
        enabled = bool(limit.value)
        return enabled, enabled, (-1 if enabled else 0)
    n = int(limit.value)
    return usage < n, n, max(0, n - usage)


class EntitlementResolver:
    def __init__(self, catalog: EntitlementCatalog, meter: UsageMeter, subscriptions: SubscriptionService):
        self.catalog = catalog
        self.meter = meter
        self.subscriptions = subscriptions

    def effective_plan(self, user_id: str, now: Optional[datetime] = None) -> Tuple[Plan, Optional[Subscription]]:
        """The plan whose limits apply to the user at `now`, and the subscription granting it."""
        ts = normalize_now(now)
        current = self.subscriptions.get_current_subscription(user_id)
        if current is not None and current.is_usable(ts):
            return self.catalog.get_plan(current.plan_id), current
        return self.catalog.get_default_plan(), None

    def check_and_describe(self, user_id: str, feature: str, now: Optional[datetime] = None) -> EntitlementDecision:
        """
        Resolve one feature for one user.

        Raises:
            ValidationError: unknown feature
            StorageUnavailableError: subscriptions or counters unreadable (fail closed)
        """
        validate_feature(feature)
        ts = normalize_now(now)
        try:
            plan, _ = self.effective_plan(user_id, ts)
            limit = self.catalog.get_limit(plan.plan_id, feature)
            usage = self.meter.get_usage(user_id, feature, now=ts) if limit.kind == LimitKind.COUNT else 0
        except SQLAlchemyError as exc:
            entitlement_checks_total.inc(labels={"feature": feature, "allowed": "error"})
            logger.error("[entitlement] storage unavailable", extra={"user_id": user_id, "feature": feature})
            raise StorageUnavailableError("Entitlement storage unavailable") from exc

        decision = self._decide(plan, feature, limit, usage)
        entitlement_checks_total.inc(labels={"feature": feature, "allowed": str(decision.allowed).lower()})
        log = logger.info if decision.allowed else logger.warning
        log(
            "[entitlement] ALLOWED" if decision.allowed else "[entitlement] DENIED",
            extra={
                "user_id": user_id,
                "feature": feature,
                "plan_id": plan.plan_id,
                "limit": decision.limit,
                "usage": usage,
                "remaining": decision.remaining,
            },
        )
        return decision

    def _decide(self, plan: Plan, feature: str, limit: LimitValue, usage: int) -> EntitlementDecision:
        allowed, limit_out, remaining = evaluate(limit, usage)
        hint = None
        if not allowed:
            upgrade = self.upgrade_hint(feature, usage, current_plan=plan)
            hint = upgrade.plan_id if upgrade else None
        return EntitlementDecision(
            allowed=allowed,
            feature=feature,
            plan_id=plan.plan_id,
            limit=limit_out,
            usage=usage,
            remaining=remaining,
            upgrade_hint=hint,
        )

    def upgrade_hint(self, feature: str, usage: int = 0, current_plan: Optional[Plan] = None) -> Optional[Plan]:
        """Cheapest paid plan under which `feature` would be allowed at `usage`."""
        validate_feature(feature)
        for plan in self.catalog.list_plans():
            if not plan.is_paid:
                continue
            if current_plan is not None and plan.plan_id == current_plan.plan_id:
                continue
            allowed, _, _ = evaluate(self.catalog.get_limit(plan.plan_id, feature), usage)
            if allowed:
                return plan
        return None

    def describe_all(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Status of every registered feature for the user."""
        ts = normalize_now(now)
        try:
            plan, subscription = self.effective_plan(user_id, ts)
            usage_by_feature = self.meter.get_period_usage(user_id, now=ts)
        except SQLAlchemyError as exc:
            logger.error("[entitlement] storage unavailable", extra={"user_id": user_id})
            raise StorageUnavailableError("Entitlement storage unavailable") from exc

        features: Dict[str, Dict[str, Any]] = {}
        blocked: List[str] = []
        for feature in FEATURE_DEFAULTS:
            limit = self.catalog.get_limit(plan.plan_id, feature)
            usage = usage_by_feature.get(feature, 0) if limit.kind == LimitKind.COUNT else 0
            decision = self._decide(plan, feature, limit, usage)
            features[feature] = decision.to_dict()
            if not decision.allowed:
                blocked.append(feature)

        return {
            "user_id": user_id,
            "plan_id": plan.plan_id,
            "plan_name": plan.name,
            "subscription_id": subscription.id if subscription else None,
            "subscription_state": subscription.state.value if subscription else None,
            "period_key": self.meter.current_period_key(ts),
            "features": features,
            "needs_upgrade": bool(blocked),
            "blocked_features": blocked,
        }
