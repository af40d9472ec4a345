"""
entitlement_engine/features/subscriptions/state_machine.py

Subscription lifecycle state machine.

Every write to the subscriptions table goes through here. Transitions are
serialized per subscription with an optimistic version check
(UPDATE ... WHERE id = :id AND version = :v); a lost race is re-read and
retried a bounded number of times.

Events that are already satisfied (expire on an expired row, approve on an
active row...) are reported as skipped so a repeated sweep is a no-op.

Callers acting on a row they read earlier pass `expected_version` and/or
`expires_by`; when the stored row no longer matches, the event is skipped
instead of being applied to a subscription that moved on.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from entitlement_engine.core.clock import add_months, normalize_now
from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.core.database import get_db_session, is_transient_error, subscriptions
from entitlement_engine.core.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    NotFoundError,
)
from entitlement_engine.core.metrics import subscription_transitions_total
from entitlement_engine.models.subscription import (
    Subscription,
    SubscriptionOrigin,
    SubscriptionState,
)


logger = logging.getLogger("entitlements.subscriptions")

S = SubscriptionState

# Rows that have not reached their terminal state yet
CURRENT = (S.ACTIVE.value, S.PENDING_RENEWAL.value, S.CANCELLED.value, S.SUSPENDED.value)

_RETRY_SLEEP_SECONDS = 0.02
_MAX_BACKOFF_SECONDS = 24 * 3600


class TransitionEvent(str, Enum):
    BEGIN_RENEWAL = "begin_renewal"
    CHARGE_INITIATED = "charge_initiated"
    APPROVE = "approve"
    REJECT = "reject"
    EXPIRE = "expire"
    EXTEND = "extend"
    CANCEL = "cancel"
    REINSTATE = "reinstate"
    SUPERSEDE = "supersede"


E = TransitionEvent

# event -> states the event may be applied from
ALLOWED_FROM: Dict[TransitionEvent, frozenset] = {
    E.BEGIN_RENEWAL: frozenset({S.ACTIVE}),
    E.CHARGE_INITIATED: frozenset({S.PENDING_RENEWAL}),
    E.APPROVE: frozenset({S.PENDING_RENEWAL, S.CANCELLED}),
    E.REJECT: frozenset({S.PENDING_RENEWAL}),
    E.EXPIRE: frozenset({S.ACTIVE, S.PENDING_RENEWAL, S.CANCELLED, S.SUSPENDED}),
    E.EXTEND: frozenset({S.ACTIVE}),
    E.CANCEL: frozenset({S.ACTIVE, S.PENDING_RENEWAL}),
    E.REINSTATE: frozenset({S.SUSPENDED}),
    E.SUPERSEDE: frozenset({S.ACTIVE, S.PENDING_RENEWAL, S.CANCELLED, S.SUSPENDED}),
}

# event -> states in which the event has already taken effect
ALREADY_SATISFIED: Dict[TransitionEvent, frozenset] = {
    E.BEGIN_RENEWAL: frozenset({S.PENDING_RENEWAL}),
    E.APPROVE: frozenset({S.ACTIVE}),
    E.EXPIRE: frozenset({S.EXPIRED}),
    E.CANCEL: frozenset({S.CANCELLED, S.EXPIRED}),
    E.SUPERSEDE: frozenset({S.EXPIRED}),
}


def is_allowed(state: SubscriptionState, event: TransitionEvent) -> bool:
    return state in ALLOWED_FROM[event]


def compute_backoff(failed_attempts: int, base_seconds: int) -> timedelta:
    """Exponential retry delay after the n-th rejected charge, floor 30s and cap 1 day."""
    seconds = base_seconds * (2 ** max(0, failed_attempts - 1))
    return timedelta(seconds=min(max(30, seconds), _MAX_BACKOFF_SECONDS))


def new_charge_key(subscription_id: int) -> str:
    return f"renewal-{subscription_id}-{uuid4().hex}"


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one event: the row before and after, and whether it changed."""
    event: TransitionEvent
    before: Subscription
    after: Subscription
    applied: bool

    @property
    def skipped(self) -> bool:
        return not self.applied


class SubscriptionStateMachine:
    """Applies lifecycle events to stored subscriptions."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    # ------------------------------------------------------------------ reads

    def get(self, subscription_id: int) -> Subscription:
        with get_db_session() as session:
            return self._load(session, subscription_id)

    def _load(self, session: Session, subscription_id: int) -> Subscription:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        if not row:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return Subscription.from_row(row)

    def current_rows(self, session: Session, user_id: str) -> List[Subscription]:
        rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id, subscriptions.c.state.in_(CURRENT))
            .order_by(subscriptions.c.id)
        ).fetchall()
        return [Subscription.from_row(row) for row in rows]

    def has_newer_paid(self, user_id: str, after_id: int) -> bool:
        """True when the user bought or reactivated a plan after `after_id`.

        Automatic downgrade rows don't count.
        """
        with get_db_session() as session:
            newer = session.execute(
                select(subscriptions.c.id).where(
                    subscriptions.c.user_id == user_id,
                    subscriptions.c.id > after_id,
                    subscriptions.c.origin.in_(
                        (SubscriptionOrigin.PAYMENT.value, SubscriptionOrigin.REACTIVATION.value)
                    ),
                ).limit(1)
            ).first()
        return newer is not None

    # ----------------------------------------------------------------- writes

    def apply(self, subscription_id: int, event: TransitionEvent, now: Optional[datetime] = None, **params: Any) -> TransitionResult:
        """
        Apply one event to a subscription.

        Raises:
            NotFoundError: unknown subscription
            InvalidTransitionError: event not allowed from the current state
            ConcurrentModificationError: lost the version race on every retry
        """
        event = TransitionEvent(event)
        ts = normalize_now(now)
        return self._with_retries(lambda session: self._transition(session, subscription_id, event, ts, params))

    def create(
        self,
        user_id: str,
        plan_id: str,
        origin: SubscriptionOrigin,
        now: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        auto_renew: bool = False,
        observation: Optional[str] = None,
    ) -> Subscription:
        """
        Insert a new active subscription, superseding the user's current one
        in the same transaction.
        """
        ts = normalize_now(now)
        return self._with_retries(
            lambda session: self._create(session, user_id, plan_id, SubscriptionOrigin(origin), ts, expires_at, auto_renew, observation)
        )

    def expire_and_downgrade(
        self,
        subscription_id: int,
        free_plan_id: str,
        now: Optional[datetime] = None,
        observation: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[TransitionResult, Optional[Subscription]]:
        """
        Expire an overdue subscription and put the user on the free plan, atomically.

        Returns the expire result and the downgrade subscription (None when the
        expire was skipped or the user already holds a live subscription).
        The expire is skipped when the row is no longer past its expiry at
        `now`, or no longer at `expected_version`.
        """
        ts = normalize_now(now)
        params = {"observation": observation, "expected_version": expected_version, "expires_by": ts}

        def _run(session: Session):
            result = self._transition(session, subscription_id, E.EXPIRE, ts, params)
            if result.skipped:
                return result, None
            user_id = result.after.user_id
            if any(sub.is_live for sub in self.current_rows(session, user_id)):
                return result, None
            downgrade = self._create(
                session, user_id, free_plan_id, SubscriptionOrigin.DOWNGRADE, ts, None, False,
                f"downgrade after subscription {subscription_id} expired",
            )
            return result, downgrade

        return self._with_retries(_run)

    # --------------------------------------------------------------- internals

    def _with_retries(self, fn: Callable[[Session], Any]) -> Any:
        attempts = self.settings.TRANSITION_RETRIES
        for attempt in range(attempts + 1):
            try:
                with get_db_session() as session:
                    return fn(session)
            except ConcurrentModificationError:
                if attempt >= attempts:
                    raise
            except OperationalError as exc:
                if not is_transient_error(exc) or attempt >= attempts:
                    raise
            logger.info("[subscriptions] retrying after concurrent write", extra={"attempt": attempt + 1})
            time.sleep(_RETRY_SLEEP_SECONDS * (attempt + 1))
        raise ConcurrentModificationError("Subscription write retries exhausted")

    def _transition(self, session: Session, subscription_id: int, event: TransitionEvent, now: datetime, params: Dict[str, Any]) -> TransitionResult:
        sub = self._load(session, subscription_id)

        if self._is_stale(sub, params):
            subscription_transitions_total.inc(labels={"event": event.value, "result": "stale"})
            logger.info(
                "[subscriptions] transition skipped, row changed since it was read",
                extra={
                    "subscription_id": sub.id,
                    "user_id": sub.user_id,
                    "state": sub.state.value,
                    "event_type": event.value,
                    "version": sub.version,
                    "expected_version": params.get("expected_version"),
                },
            )
            return TransitionResult(event=event, before=sub, after=sub, applied=False)

        if self._already_satisfied(sub, event, params):
            subscription_transitions_total.inc(labels={"event": event.value, "result": "skipped"})
            logger.info(
                "[subscriptions] transition skipped",
                extra={"subscription_id": sub.id, "user_id": sub.user_id, "state": sub.state.value, "event_type": event.value},
            )
            return TransitionResult(event=event, before=sub, after=sub, applied=False)

        if not is_allowed(sub.state, event):
            subscription_transitions_total.inc(labels={"event": event.value, "result": "invalid"})
            logger.warning(
                "[subscriptions] invalid transition",
                extra={"subscription_id": sub.id, "user_id": sub.user_id, "state": sub.state.value, "event_type": event.value},
            )
            raise InvalidTransitionError(sub.id, sub.state.value, event.value)

        values = self._effects(sub, event, now, params)
        values["version"] = sub.version + 1
        values["updated_at"] = now
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == sub.id, subscriptions.c.version == sub.version)
            .values(**values)
        )
        if result.rowcount == 0:
            subscription_transitions_total.inc(labels={"event": event.value, "result": "conflict"})
            raise ConcurrentModificationError(f"Subscription {sub.id} changed concurrently")

        after = self._load(session, sub.id)
        subscription_transitions_total.inc(labels={"event": event.value, "result": "applied"})
        logger.info(
            "[subscriptions] transition applied",
            extra={
                "subscription_id": sub.id,
                "user_id": sub.user_id,
                "event_type": event.value,
                "from_state": sub.state.value,
                "to_state": after.state.value,
                "failed_attempts": after.failed_attempts,
            },
        )
        return TransitionResult(event=event, before=sub, after=after, applied=True)

    def _is_stale(self, sub: Subscription, params: Dict[str, Any]) -> bool:
        expected = params.get("expected_version")
        if expected is not None and sub.version != expected:
            return True
        expires_by = params.get("expires_by")
        if expires_by is not None:
            return sub.expires_at is None or sub.expires_at > expires_by
        return False

    def _already_satisfied(self, sub: Subscription, event: TransitionEvent, params: Dict[str, Any]) -> bool:
        reference = params.get("gateway_reference_id")
        if event == E.CHARGE_INITIATED:
            return sub.state == S.PENDING_RENEWAL and reference is not None and sub.gateway_reference_id == reference
        if event in (E.APPROVE, E.REJECT) and reference is not None and sub.gateway_reference_id != reference:
            # Outcome for a charge that is no longer the current one
            return True
        return sub.state in ALREADY_SATISFIED.get(event, frozenset())

    def _effects(self, sub: Subscription, event: TransitionEvent, now: datetime, params: Dict[str, Any]) -> Dict[str, Any]:
        cfg = self.settings
        observation = params.get("observation")
        values: Dict[str, Any] = {}
        if observation:
            values["last_observation"] = observation

        if event == E.BEGIN_RENEWAL:
            base = max(sub.expires_at, now) if sub.expires_at else now
            values.update(
                state=S.PENDING_RENEWAL.value,
                expires_at=base + timedelta(days=cfg.GRACE_PERIOD_DAYS),
                pending_charge_key=new_charge_key(sub.id),
                gateway_reference_id=None,
                next_attempt_at=None,
            )
        elif event == E.CHARGE_INITIATED:
            reference = params.get("gateway_reference_id")
            if not reference:
                raise InvalidTransitionError(sub.id, sub.state.value, event.value)
            values.update(gateway_reference_id=reference, next_attempt_at=None)
        elif event == E.APPROVE:
            paid_until = add_months(now, cfg.BILLING_PERIOD_MONTHS)
            if sub.state == S.CANCELLED:
                # Charge started before the cancel: honour the period, don't resume renewing
                values["expires_at"] = max(sub.expires_at, paid_until) if sub.expires_at else paid_until
            else:
                values.update(state=S.ACTIVE.value, expires_at=paid_until)
            values.update(
                failed_attempts=0,
                gateway_reference_id=None,
                pending_charge_key=None,
                next_attempt_at=None,
            )
        elif event == E.REJECT:
            failed = sub.failed_attempts + 1
            values["failed_attempts"] = failed
            if failed >= cfg.MAX_FAILED_ATTEMPTS:
                values.update(
                    state=S.SUSPENDED.value,
                    gateway_reference_id=None,
                    pending_charge_key=None,
                    next_attempt_at=None,
                )
            else:
                values.update(
                    state=S.PENDING_RENEWAL.value,
                    gateway_reference_id=None,
                    pending_charge_key=new_charge_key(sub.id),
                    next_attempt_at=now + compute_backoff(failed, cfg.RETRY_BACKOFF_BASE_SECONDS),
                )
        elif event == E.EXPIRE:
            values.update(state=S.EXPIRED.value, auto_renew=False, pending_charge_key=None, next_attempt_at=None)
        elif event == E.EXTEND:
            base = sub.expires_at or now
            values["expires_at"] = add_months(base, 12)
        elif event == E.CANCEL:
            values.update(
                state=S.CANCELLED.value,
                auto_renew=False,
                pending_charge_key=None,
                next_attempt_at=None,
                cancelled_at=now,
            )
        elif event == E.REINSTATE:
            values.update(state=S.ACTIVE.value, failed_attempts=0)
            if params.get("expires_at") is not None:
                values["expires_at"] = params["expires_at"]
        elif event == E.SUPERSEDE:
            values.update(
                state=S.EXPIRED.value,
                auto_renew=False,
                superseded_by=params.get("superseded_by"),
                pending_charge_key=None,
                next_attempt_at=None,
            )
        return values

    def _create(
        self,
        session: Session,
        user_id: str,
        plan_id: str,
        origin: SubscriptionOrigin,
        now: datetime,
        expires_at: Optional[datetime],
        auto_renew: bool,
        observation: Optional[str],
    ) -> Subscription:
        previous = self.current_rows(session, user_id)
        for sub in previous:
            self._transition(session, sub.id, E.SUPERSEDE, now, {})

        try:
            result = session.execute(
                insert(subscriptions).values(
                    user_id=user_id,
                    plan_id=plan_id,
                    state=S.ACTIVE.value,
                    origin=origin.value,
                    started_at=now,
                    expires_at=expires_at,
                    auto_renew=auto_renew,
                    failed_attempts=0,
                    last_observation=observation,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError as exc:
            # Another writer created a live row for this user first
            raise ConcurrentModificationError(f"Live subscription for {user_id} created concurrently") from exc
        new_id = result.inserted_primary_key[0]

        if previous:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id.in_([sub.id for sub in previous]))
                .values(superseded_by=new_id)
            )

        created = self._load(session, new_id)
        subscription_transitions_total.inc(labels={"event": origin.value, "result": "applied"})
        logger.info(
            "[subscriptions] subscription created",
            extra={
                "subscription_id": created.id,
                "user_id": user_id,
                "plan_id": plan_id,
                "origin": origin.value,
                "superseded": [sub.id for sub in previous],
            },
        )
        return created
