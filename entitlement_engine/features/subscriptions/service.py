"""
entitlement_engine/features/subscriptions/service.py

Subscription service: user-facing lifecycle operations and queries.

Handles:
- Signup on the free plan
- Paid activation after a confirmed payment
- Cancellation (keeps access until expires_at) and admin reinstatement
- Current subscription, history and per-state counts
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select

from entitlement_engine.core.clock import add_months, normalize_now
from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.core.database import get_db_session, subscriptions
from entitlement_engine.core.errors import NotFoundError, ValidationError
from entitlement_engine.features.catalog.service import EntitlementCatalog
from entitlement_engine.features.subscriptions.state_machine import (
    CURRENT,
    SubscriptionStateMachine,
    TransitionEvent,
    TransitionResult,
)
from entitlement_engine.models.subscription import Subscription, SubscriptionOrigin, SubscriptionState


logger = logging.getLogger("entitlements.subscriptions")


class SubscriptionService:
    def __init__(
        self,
        catalog: EntitlementCatalog,
        state_machine: Optional[SubscriptionStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self.catalog = catalog
        self.settings = settings or default_settings
        self.state_machine = state_machine or SubscriptionStateMachine(self.settings)

    def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        """
        The user's current subscription: the newest row that has not reached
        its terminal state, or the newest row overall when every row is expired.
        """
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions)
                .where(subscriptions.c.user_id == user_id, subscriptions.c.state.in_(CURRENT))
                .order_by(subscriptions.c.id.desc())
                .limit(1)
            ).first()
            if row is None:
                row = session.execute(
                    select(subscriptions)
                    .where(subscriptions.c.user_id == user_id)
                    .order_by(subscriptions.c.id.desc())
                    .limit(1)
                ).first()
        return Subscription.from_row(row) if row else None

    def get_subscription(self, subscription_id: int) -> Subscription:
        return self.state_machine.get(subscription_id)

    def list_history(self, user_id: str) -> List[Subscription]:
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .order_by(subscriptions.c.id)
            ).fetchall()
        return [Subscription.from_row(row) for row in rows]

    def subscription_stats(self) -> Dict[str, int]:
        """Count of subscriptions per state (all states present, zero-filled)."""
        stats = {state.value: 0 for state in SubscriptionState}
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions.c.state, func.count().label("total")).group_by(subscriptions.c.state)
            ).fetchall()
        for row in rows:
            stats[row.state] = int(row.total)
        return stats

    def signup(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """Put a new user on the free plan. Returns the existing row for known users."""
        existing = self.get_current_subscription(user_id)
        if existing is not None:
            return existing
        free_plan = self.catalog.get_default_plan()
        return self.state_machine.create(
            user_id,
            free_plan.plan_id,
            SubscriptionOrigin.SIGNUP,
            now=now,
            expires_at=None,
            auto_renew=False,
        )

    def activate_paid(self, user_id: str, plan_id: str, now: Optional[datetime] = None, observation: Optional[str] = None) -> Subscription:
        """Start a paid subscription after a confirmed payment."""
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_paid:
            raise ValidationError(f"Plan {plan_id!r} is not a paid plan")
        ts = normalize_now(now)
        return self.state_machine.create(
            user_id,
            plan.plan_id,
            SubscriptionOrigin.PAYMENT,
            now=ts,
            expires_at=add_months(ts, self.settings.BILLING_PERIOD_MONTHS),
            auto_renew=True,
            observation=observation,
        )

    def cancel(self, user_id: str, now: Optional[datetime] = None) -> TransitionResult:
        current = self.get_current_subscription(user_id)
        if current is None:
            raise NotFoundError(f"User {user_id} has no subscription")
        if current.expires_at is None:
            # Nothing to stop: a non-expiring free plan would stay cancelled but usable forever
            raise ValidationError(f"Subscription {current.id} does not expire and cannot be cancelled")
        return self.state_machine.apply(current.id, TransitionEvent.CANCEL, now=now, observation="cancelled by user")

    def reinstate(self, subscription_id: int, expires_at: Optional[datetime] = None, now: Optional[datetime] = None) -> TransitionResult:
        return self.state_machine.apply(
            subscription_id,
            TransitionEvent.REINSTATE,
            now=now,
            expires_at=expires_at,
            observation="reinstated",
        )
