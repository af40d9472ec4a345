"""
entitlement_engine/features/catalog/service.py

Entitlement catalog: plans and their per-feature limits.

Handles:
- Catalog seeding (gratuito, basico, premium)
- Limit resolution with explicit, most-restrictive defaults
- Per-process TTL cache (plans change rarely and only through the admin editor)
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import insert, select

from entitlement_engine.core.config import settings
from entitlement_engine.core.database import get_db_session, plan_limits, plans
from entitlement_engine.core.errors import UnknownPlanError, ValidationError
from entitlement_engine.models.plan import LimitValue, Plan


logger = logging.getLogger("entitlements.catalog")


# Every feature the engine knows about, with the value a plan gets when it has
# no row for it. Defaults are always the most restrictive value.
FEATURE_DEFAULTS: Dict[str, LimitValue] = {
    "transacciones_mes": LimitValue.count(0),
    "gastos_recurrentes": LimitValue.count(0),
    "consultas_ia_mes": LimitValue.count(0),
    "presupuestos_activos": LimitValue.count(0),
    "categorias_personalizadas": LimitValue.boolean(False),
    "modo_familiar": LimitValue.boolean(False),
    "alertas_automaticas": LimitValue.boolean(False),
    "prestamos_inversiones": LimitValue.boolean(False),
    "exportacion": LimitValue.boolean(False),
    "tareas": LimitValue.boolean(False),
    "miembros_familia": LimitValue.count(0),
}


# Default catalog; -1 means unlimited
DEFAULT_PLANS = {
    "gratuito": {
        "name": "Gratuito",
        "is_paid": False,
        "monthly_price": 0,
        "is_default": True,
        "limits": {
            "transacciones_mes": 50,
            "gastos_recurrentes": 2,
            "consultas_ia_mes": 3,
            "presupuestos_activos": 1,
            "categorias_personalizadas": False,
            "modo_familiar": False,
            "alertas_automaticas": False,
            "prestamos_inversiones": False,
            "exportacion": False,
            "tareas": False,
            "miembros_familia": 0,
        },
    },
    "basico": {
        "name": "Básico",
        "is_paid": True,
        "monthly_price": 499,
        "is_default": False,
        "limits": {
            "transacciones_mes": -1,
            "gastos_recurrentes": 10,
            "consultas_ia_mes": 15,
            "presupuestos_activos": 3,
            "categorias_personalizadas": True,
            "modo_familiar": True,
            "alertas_automaticas": True,
            "prestamos_inversiones": False,
            "exportacion": True,
            "tareas": False,
            "miembros_familia": 5,
        },
    },
    "premium": {
        "name": "Premium",
        "is_paid": True,
        "monthly_price": 999,
        "is_default": False,
        "limits": {
            "transacciones_mes": -1,
            "gastos_recurrentes": -1,
            "consultas_ia_mes": -1,
            "presupuestos_activos": -1,
            "categorias_personalizadas": True,
            "modo_familiar": True,
            "alertas_automaticas": True,
            "prestamos_inversiones": True,
            "exportacion": True,
            "tareas": True,
            "miembros_familia": 10,
        },
    },
}


def validate_feature(feature: str) -> str:
    if feature not in FEATURE_DEFAULTS:
        raise ValidationError(f"Unknown feature: {feature!r}")
    return feature


def seed_plans(catalog: Optional[Dict[str, dict]] = None) -> None:
    """
    Seed default plans into database (idempotent).

    Inserts missing plans and missing limit rows; existing rows are left
    untouched so administrative edits survive re-seeding.
    """
    now = datetime.now(timezone.utc)
    catalog = catalog or DEFAULT_PLANS

    with get_db_session() as session:
        for plan_id, config in catalog.items():
            existing = session.execute(
                select(plans.c.plan_id).where(plans.c.plan_id == plan_id)
            ).first()

            if not existing:
                session.execute(
                    insert(plans).values(
                        plan_id=plan_id,
                        name=config["name"],
                        is_paid=config.get("is_paid", False),
                        monthly_price=config.get("monthly_price", 0),
                        currency=config.get("currency", settings.CURRENCY),
                        is_default=config.get("is_default", False),
                        created_at=now,
                    )
                )

            present = {
                row.feature
                for row in session.execute(
                    select(plan_limits.c.feature).where(plan_limits.c.plan_id == plan_id)
                )
            }
            for feature, value in config.get("limits", {}).items():
                if feature in present:
                    continue
                session.execute(
                    insert(plan_limits).values(
                        plan_id=plan_id,
                        feature=feature,
                        value=value,
                        created_at=now,
                    )
                )

    logger.info("[catalog] seeded", extra={"plans": sorted(catalog)})


def _plan_from_row(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        is_paid=bool(row.is_paid),
        monthly_price=int(row.monthly_price or 0),
        currency=row.currency,
        is_default=bool(row.is_default),
        created_at=row.created_at,
    )


class EntitlementCatalog:
    """
    Read-only view of the plan catalog.

    Plans and limits are loaded as one snapshot and kept for `ttl_seconds`.
    Callers never see a missing limit: unset features fall back to
    FEATURE_DEFAULTS.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, free_plan_id: Optional[str] = None):
        self.ttl_seconds = settings.CATALOG_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.free_plan_id = free_plan_id or settings.FREE_PLAN_ID
        self._lock = threading.Lock()
        self._snapshot: Optional[Tuple[Dict[str, Plan], Dict[str, Dict[str, LimitValue]]]] = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._loaded_at = 0.0

    def _load(self) -> Tuple[Dict[str, Plan], Dict[str, Dict[str, LimitValue]]]:
        with get_db_session() as session:
            plan_rows = session.execute(select(plans)).fetchall()
            limit_rows = session.execute(select(plan_limits)).fetchall()

        loaded_plans = {row.plan_id: _plan_from_row(row) for row in plan_rows}
        loaded_limits: Dict[str, Dict[str, LimitValue]] = {plan_id: {} for plan_id in loaded_plans}
        for row in limit_rows:
            if row.feature not in FEATURE_DEFAULTS:
                logger.warning(
                    "[catalog] ignoring limit for unregistered feature",
                    extra={"plan_id": row.plan_id, "feature": row.feature},
                )
                continue
            loaded_limits.setdefault(row.plan_id, {})[row.feature] = LimitValue.from_json(row.value)
        return loaded_plans, loaded_limits

    def _get_snapshot(self) -> Tuple[Dict[str, Plan], Dict[str, Dict[str, LimitValue]]]:
        with self._lock:
            fresh = self._snapshot is not None and (time.monotonic() - self._loaded_at) < self.ttl_seconds
            if fresh:
                return self._snapshot
            self._snapshot = self._load()
            self._loaded_at = time.monotonic()
            return self._snapshot

    def get_plan(self, plan_id: str) -> Plan:
        loaded_plans, _ = self._get_snapshot()
        plan = loaded_plans.get(plan_id)
        if plan is None:
            raise UnknownPlanError(plan_id)
        return plan

    def list_plans(self) -> List[Plan]:
        loaded_plans, _ = self._get_snapshot()
        return sorted(loaded_plans.values(), key=lambda p: (p.monthly_price, p.plan_id))

    def get_default_plan(self) -> Plan:
        """The free plan used for signup and automatic downgrade."""
        loaded_plans, _ = self._get_snapshot()
        if self.free_plan_id in loaded_plans:
            return loaded_plans[self.free_plan_id]
        for plan in loaded_plans.values():
            if plan.is_default:
                return plan
        raise UnknownPlanError(self.free_plan_id)

    def get_limit(self, plan_id: str, feature: str) -> LimitValue:
        validate_feature(feature)
        loaded_plans, loaded_limits = self._get_snapshot()
        if plan_id not in loaded_plans:
            raise UnknownPlanError(plan_id)
        return loaded_limits.get(plan_id, {}).get(feature, FEATURE_DEFAULTS[feature])

    def get_limits(self, plan_id: str) -> Dict[str, LimitValue]:
        """Every registered feature for a plan, defaults filled in."""
        return {feature: self.get_limit(plan_id, feature) for feature in FEATURE_DEFAULTS}
