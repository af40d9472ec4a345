"""
entitlement_engine/models/subscription.py

Subscription record and its lifecycle enums.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict

from entitlement_engine.core.clock import as_utc


class SubscriptionState(str, Enum):
    ACTIVE = "active"
    PENDING_RENEWAL = "pending_renewal"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionOrigin(str, Enum):
    SIGNUP = "signup"
    PAYMENT = "payment"
    DOWNGRADE = "downgrade"
    REACTIVATION = "reactivation"


LIVE_STATES = frozenset({SubscriptionState.ACTIVE, SubscriptionState.PENDING_RENEWAL})


class Subscription(BaseModel):
    """
    One row of a user's subscription history.

    Constraint: at most one subscription per user is live
    (active or pending_renewal). Rows are superseded, never deleted.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    plan_id: str
    state: SubscriptionState
    origin: SubscriptionOrigin
    started_at: datetime
    expires_at: Optional[datetime] = None
    auto_renew: bool = False
    failed_attempts: int = 0
    last_observation: Optional[str] = None
    superseded_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    gateway_reference_id: Optional[str] = None
    pending_charge_key: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def from_row(cls, row: Any) -> "Subscription":
        return cls(
            id=row.id,
            user_id=row.user_id,
            plan_id=row.plan_id,
            state=SubscriptionState(row.state),
            origin=SubscriptionOrigin(row.origin),
            started_at=as_utc(row.started_at),
            expires_at=as_utc(row.expires_at),
            auto_renew=bool(row.auto_renew),
            failed_attempts=int(row.failed_attempts or 0),
            last_observation=row.last_observation,
            superseded_by=row.superseded_by,
            cancelled_at=as_utc(row.cancelled_at),
            gateway_reference_id=row.gateway_reference_id,
            pending_charge_key=row.pending_charge_key,
            next_attempt_at=as_utc(row.next_attempt_at),
            version=int(row.version),
        )

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def is_usable(self, now: datetime) -> bool:
        """Whether this subscription still grants its plan's limits at `now`.

        Active and pending_renewal (grace window) grant access; a cancelled
        subscription keeps access until expires_at.
        """
        if self.state in LIVE_STATES:
            return True
        if self.state == SubscriptionState.CANCELLED:
            return self.expires_at is None or self.expires_at > now
        return False
