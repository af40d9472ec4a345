"""
Renewal reconciler.

Periodic sweep that moves subscriptions through renewal, applies gateway
outcomes and expires what is overdue. Safe to run repeatedly and from several
instances at once: every write goes through the state machine's version
check, charges carry gateway idempotency keys and outcomes are de-duplicated
through the renewal_charges log.

A sweep runs these steps in order:
1. active + auto_renew subscriptions entering the lookahead window begin
   renewal (paid plans) or are extended (non-paid plans)
2. renewal charges are initiated with the subscription's pending charge key
3. pending_renewal subscriptions are retried (after backoff) or polled;
   charges still in flight for cancelled subscriptions are polled too
4. final outcomes are applied (shared with the inbound webhook)
5. overdue subscriptions are expired and the user is moved to the free plan
"""
from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, insert, not_, or_, select, update

from entitlement_engine.core.clock import add_months, normalize_now, utc_now
from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.core.database import (
    dialect_insert,
    get_db_session,
    reconciler_runs,
    renewal_charges,
    subscriptions,
)
from entitlement_engine.core.errors import GatewayError, GatewayRejectedError, GatewayTimeoutError
from entitlement_engine.core.logging import bind_sweep_id
from entitlement_engine.core.metrics import (
    gateway_call_duration_seconds,
    gateway_calls_total,
    reconciler_items_total,
    reconciler_last_run_timestamp,
    reconciler_runs_total,
)
from entitlement_engine.features.billing import events as ev
from entitlement_engine.features.billing.events import EventBus, SubscriptionEvent
from entitlement_engine.features.billing.gateway import (
    ChargeOutcome,
    GatewayAdapter,
    OutcomeStatus,
    RenewalAttempt,
)
from entitlement_engine.features.catalog.service import EntitlementCatalog
from entitlement_engine.features.subscriptions.state_machine import (
    CURRENT,
    SubscriptionStateMachine,
    TransitionEvent,
    TransitionResult,
)
from entitlement_engine.models.subscription import Subscription, SubscriptionOrigin, SubscriptionState


logger = logging.getLogger("entitlements.reconciler")

S = SubscriptionState

GATEWAY_WORKERS = 4


@dataclass(frozen=True)
class SweepItem:
    subscription_id: Optional[int]
    user_id: Optional[str]
    action: str
    outcome: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "action": self.action,
            "outcome": self.outcome,
            "detail": self.detail,
        }


@dataclass
class SweepReport:
    started_at: datetime
    trigger: str = "scheduler"
    finished_at: Optional[datetime] = None
    items: List[SweepItem] = field(default_factory=list)

    def add(self, item: SweepItem) -> SweepItem:
        self.items.append(item)
        reconciler_items_total.inc(labels={"action": item.action, "outcome": item.outcome})
        return item

    @property
    def errors(self) -> List[SweepItem]:
        return [item for item in self.items if item.outcome == "error"]

    @property
    def counters(self) -> Dict[str, int]:
        counts = Counter(f"{item.action}.{item.outcome}" for item in self.items)
        return dict(sorted(counts.items()))

    @property
    def status(self) -> str:
        return "partial" if self.errors else "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "trigger": self.trigger,
            "status": self.status,
            "counters": self.counters,
            "items": [item.to_dict() for item in self.items],
        }


class RenewalReconciler:
    def __init__(
        self,
        gateway: GatewayAdapter,
        catalog: EntitlementCatalog,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        state_machine: Optional[SubscriptionStateMachine] = None,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.events = events or EventBus()
        self.settings = settings or default_settings
        self.state_machine = state_machine or SubscriptionStateMachine(self.settings)
        self._executor = ThreadPoolExecutor(max_workers=GATEWAY_WORKERS, thread_name_prefix="gateway")

    def close(self) -> None:
        # Calls that timed out may still be running; don't block on them
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------ sweep

    def run_sweep(self, now: Optional[datetime] = None, trigger: str = "scheduler") -> SweepReport:
        ts = normalize_now(now)
        report = SweepReport(started_at=ts, trigger=trigger)
        with bind_sweep_id(uuid.uuid4().hex[:12]):
            logger.info("[reconciler] sweep started", extra={"trigger": trigger, "now": ts.isoformat()})

            initiated = set()
            self._renew_due(ts, report, initiated)
            self._process_pending(ts, report, initiated)
            self._expire_overdue(ts, report)

            report.finished_at = utc_now()
            self._record_run(report)
            reconciler_runs_total.inc(labels={"status": report.status})
            reconciler_last_run_timestamp.set(report.finished_at.timestamp())
            logger.info(
                "[reconciler] sweep finished",
                extra={"trigger": trigger, "status": report.status, "counters": report.counters},
            )
        return report

    def _run_item(self, report: SweepReport, sub: Subscription, action: str, fn: Callable[[], None]) -> None:
        """Run one per-subscription step; a failure is recorded and the sweep goes on."""
        try:
            fn()
        except Exception as exc:
            logger.exception(
                "[reconciler] item failed",
                extra={"subscription_id": sub.id, "user_id": sub.user_id, "action": action},
            )
            report.add(SweepItem(sub.id, sub.user_id, action, "error", f"{type(exc).__name__}: {exc}"))

    def _select(self, *conditions) -> List[Subscription]:
        with get_db_session() as session:
            rows = session.execute(
                select(subscriptions).where(*conditions).order_by(subscriptions.c.id)
            ).fetchall()
        return [Subscription.from_row(row) for row in rows]

    def _horizon(self, now: datetime) -> datetime:
        return now + timedelta(hours=self.settings.RENEWAL_LOOKAHEAD_HOURS)

    # step 1
    def _renew_due(self, now: datetime, report: SweepReport, initiated: set) -> None:
        horizon = self._horizon(now)
        due = self._select(
            subscriptions.c.state == S.ACTIVE.value,
            subscriptions.c.auto_renew.is_(True),
            subscriptions.c.expires_at.is_not(None),
            subscriptions.c.expires_at <= horizon,
        )
        for sub in due:
            self._run_item(report, sub, "renew", lambda sub=sub: self._renew_one(sub, now, report, initiated))

    def _renew_one(self, sub: Subscription, now: datetime, report: SweepReport, initiated: set) -> None:
        plan = self.catalog.get_plan(sub.plan_id)
        # Skip if another writer touched the row after it was selected
        guard = {"expected_version": sub.version, "expires_by": self._horizon(now)}
        if not plan.is_paid:
            result = self.state_machine.apply(sub.id, TransitionEvent.EXTEND, now=now, observation="free plan extended", **guard)
            report.add(SweepItem(sub.id, sub.user_id, "extend", _outcome_of(result)))
            return

        result = self.state_machine.apply(sub.id, TransitionEvent.BEGIN_RENEWAL, now=now, **guard)
        report.add(SweepItem(sub.id, sub.user_id, "begin_renewal", _outcome_of(result)))
        if result.skipped:
            return
        self._emit(ev.SUBSCRIPTION_EXPIRING, result.after, now, {
            "expires_at": result.after.expires_at.isoformat() if result.after.expires_at else None,
        })
        initiated.add(sub.id)
        self._initiate_charge(result.after, now, report)

    # step 2
    def _initiate_charge(self, sub: Subscription, now: datetime, report: SweepReport) -> None:
        plan = self.catalog.get_plan(sub.plan_id)
        charge_key = sub.pending_charge_key or f"renewal-{sub.id}-v{sub.version}"
        try:
            handle = self._call_gateway(
                "initiate_charge",
                self.gateway.initiate_charge,
                sub.id,
                plan.monthly_price,
                plan.currency,
                {"user_id": sub.user_id, "plan_id": sub.plan_id},
                charge_key,
            )
        except GatewayRejectedError as exc:
            # Declined up front (e.g. card refused): counts as a failed attempt
            result = self.state_machine.apply(sub.id, TransitionEvent.REJECT, now=now, observation=exc.message)
            self._after_rejection(result, None, now)
            report.add(SweepItem(sub.id, sub.user_id, "reject", _outcome_of(result), exc.message))
            return
        except GatewayError as exc:
            # Stays pending_renewal without a reference; next sweep retries with the same key
            report.add(SweepItem(sub.id, sub.user_id, "initiate_charge", "pending", exc.message))
            return

        with get_db_session() as session:
            session.execute(
                dialect_insert(session, renewal_charges)
                .values(
                    gateway_reference_id=handle.gateway_reference_id,
                    subscription_id=sub.id,
                    charge_key=charge_key,
                    amount=plan.monthly_price,
                    currency=plan.currency,
                    checkout_url=handle.checkout_url,
                    outcome=OutcomeStatus.PENDING.value,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=["gateway_reference_id"])
            )

        result = self.state_machine.apply(
            sub.id,
            TransitionEvent.CHARGE_INITIATED,
            now=now,
            gateway_reference_id=handle.gateway_reference_id,
        )
        report.add(SweepItem(sub.id, sub.user_id, "initiate_charge", _outcome_of(result), handle.gateway_reference_id))

    # step 3
    def _process_pending(self, now: datetime, report: SweepReport, initiated: set) -> None:
        in_flight = select(renewal_charges.c.gateway_reference_id).where(
            renewal_charges.c.outcome == OutcomeStatus.PENDING.value
        )
        pending = self._select(
            or_(
                subscriptions.c.state == S.PENDING_RENEWAL.value,
                # cancelled mid-renewal, charge still unresolved
                and_(subscriptions.c.state == S.CANCELLED.value, subscriptions.c.gateway_reference_id.in_(in_flight)),
            )
        )
        for sub in pending:
            if sub.gateway_reference_id:
                self._run_item(report, sub, "poll", lambda sub=sub: self._poll_one(sub, now, report))
                continue
            if sub.id in initiated:
                continue
            if sub.failed_attempts >= self.settings.MAX_FAILED_ATTEMPTS:
                continue
            if sub.expires_at is not None and sub.expires_at < now:
                continue
            if sub.next_attempt_at is not None and sub.next_attempt_at > now:
                continue
            self._run_item(report, sub, "initiate_charge", lambda sub=sub: self._initiate_charge(sub, now, report))

    def _poll_one(self, sub: Subscription, now: datetime, report: SweepReport) -> None:
        reference = sub.gateway_reference_id
        try:
            outcome: ChargeOutcome = self._call_gateway("get_outcome", self.gateway.get_outcome, reference)
        except GatewayError as exc:
            report.add(SweepItem(sub.id, sub.user_id, "poll", "pending", exc.message))
            return

        attempt = RenewalAttempt(sub.id, reference, outcome.status, now)
        if not attempt.outcome.is_final:
            report.add(SweepItem(sub.id, sub.user_id, "poll", "pending", reference))
            return
        self.apply_outcome(reference, attempt.outcome, now=now, detail=outcome.detail, report=report)

    # step 4
    def apply_outcome(
        self,
        gateway_reference_id: str,
        status: OutcomeStatus,
        now: Optional[datetime] = None,
        detail: Optional[str] = None,
        report: Optional[SweepReport] = None,
    ) -> SweepItem:
        """
        Apply a final gateway verdict for a charge.

        Used by the sweep and by inbound webhooks. Unknown references and
        outcomes already applied are no-ops.
        """
        ts = normalize_now(now)
        status = OutcomeStatus(status)

        def _done(item: SweepItem) -> SweepItem:
            return report.add(item) if report is not None else item

        with get_db_session() as session:
            charge = session.execute(
                select(renewal_charges).where(renewal_charges.c.gateway_reference_id == gateway_reference_id)
            ).first()

        if charge is None:
            logger.warning("[reconciler] outcome for unknown reference", extra={"gateway_reference_id": gateway_reference_id})
            return _done(SweepItem(None, None, "outcome", "ignored", f"unknown reference {gateway_reference_id}"))
        if not status.is_final:
            return _done(SweepItem(charge.subscription_id, None, "outcome", "pending", gateway_reference_id))
        if charge.outcome != OutcomeStatus.PENDING.value:
            return _done(SweepItem(charge.subscription_id, None, "outcome", "ignored", f"already {charge.outcome}"))

        sub = self.state_machine.get(charge.subscription_id)
        observation = detail or f"{status.value} {gateway_reference_id}"

        if sub.state == S.PENDING_RENEWAL and sub.gateway_reference_id == gateway_reference_id:
            item = self._apply_current(sub, gateway_reference_id, status, ts, observation)
        elif sub.state == S.CANCELLED and sub.gateway_reference_id == gateway_reference_id:
            item = self._settle_cancelled(sub, gateway_reference_id, status, ts, observation)
        elif status == OutcomeStatus.APPROVED and sub.state in (S.EXPIRED, S.SUSPENDED):
            if not self._claim_charge(gateway_reference_id, status, ts):
                return _done(SweepItem(sub.id, sub.user_id, "outcome", "ignored", "already applied"))
            return _done(self._reactivate(sub, gateway_reference_id, ts))
        else:
            item = SweepItem(sub.id, sub.user_id, "outcome", "ignored", f"{status.value} for {sub.state.value} subscription")

        self._claim_charge(gateway_reference_id, status, ts)
        if item.outcome == "ignored":
            logger.info(
                "[reconciler] outcome recorded and ignored",
                extra={"subscription_id": sub.id, "gateway_reference_id": gateway_reference_id, "reason": item.detail},
            )
        return _done(item)

    def _apply_current(self, sub: Subscription, reference: str, status: OutcomeStatus, now: datetime, observation: str) -> SweepItem:
        if status == OutcomeStatus.APPROVED:
            result = self.state_machine.apply(
                sub.id, TransitionEvent.APPROVE, now=now, gateway_reference_id=reference, observation=observation
            )
            if result.applied:
                self._emit(ev.SUBSCRIPTION_RENEWED, result.after, now, {
                    "gateway_reference_id": reference,
                    "expires_at": result.after.expires_at.isoformat() if result.after.expires_at else None,
                })
            return SweepItem(sub.id, sub.user_id, "approve", _outcome_of(result), reference)

        result = self.state_machine.apply(
            sub.id, TransitionEvent.REJECT, now=now, gateway_reference_id=reference, observation=observation
        )
        self._after_rejection(result, reference, now)
        return SweepItem(sub.id, sub.user_id, "reject", _outcome_of(result), reference)

    def _settle_cancelled(self, sub: Subscription, reference: str, status: OutcomeStatus, now: datetime, observation: str) -> SweepItem:
        """Outcome of a charge that was in flight when the user cancelled.

        An approval extends the paid period; the subscription stays cancelled
        and does not renew again. A rejection changes nothing.
        """
        if status != OutcomeStatus.APPROVED:
            return SweepItem(sub.id, sub.user_id, "outcome", "ignored", "rejected charge for cancelled subscription")
        result = self.state_machine.apply(
            sub.id, TransitionEvent.APPROVE, now=now, gateway_reference_id=reference, observation=observation
        )
        if result.applied:
            self._emit(ev.SUBSCRIPTION_RENEWED, result.after, now, {
                "gateway_reference_id": reference,
                "expires_at": result.after.expires_at.isoformat() if result.after.expires_at else None,
                "auto_renew": False,
            })
        return SweepItem(sub.id, sub.user_id, "approve", _outcome_of(result), reference)

    def _after_rejection(self, result: TransitionResult, reference: Optional[str], now: datetime) -> None:
        if not result.applied:
            return
        after = result.after
        self._emit(ev.RENEWAL_FAILED, after, now, {
            "gateway_reference_id": reference,
            "failed_attempts": after.failed_attempts,
            "next_attempt_at": after.next_attempt_at.isoformat() if after.next_attempt_at else None,
        })
        if after.state == S.SUSPENDED:
            self._emit(ev.SUBSCRIPTION_SUSPENDED, after, now, {"failed_attempts": after.failed_attempts})

    def _reactivate(self, sub: Subscription, reference: str, now: datetime) -> SweepItem:
        """Late approval for a subscription that already left renewal."""
        if self.state_machine.has_newer_paid(sub.user_id, sub.id):
            logger.info(
                "[reconciler] late approval ignored, newer paid subscription exists",
                extra={"subscription_id": sub.id, "user_id": sub.user_id, "gateway_reference_id": reference},
            )
            return SweepItem(sub.id, sub.user_id, "reactivate", "ignored", "newer paid subscription exists")

        created = self.state_machine.create(
            sub.user_id,
            sub.plan_id,
            SubscriptionOrigin.REACTIVATION,
            now=now,
            expires_at=add_months(now, self.settings.BILLING_PERIOD_MONTHS),
            auto_renew=sub.cancelled_at is None,
            observation=f"late approval {reference} for subscription {sub.id}",
        )
        self._emit(ev.SUBSCRIPTION_REACTIVATED, created, now, {
            "previous_subscription_id": sub.id,
            "gateway_reference_id": reference,
        })
        return SweepItem(created.id, sub.user_id, "reactivate", "applied", reference)

    def _claim_charge(self, reference: str, status: OutcomeStatus, now: datetime) -> bool:
        with get_db_session() as session:
            result = session.execute(
                update(renewal_charges)
                .where(
                    renewal_charges.c.gateway_reference_id == reference,
                    renewal_charges.c.outcome == OutcomeStatus.PENDING.value,
                )
                .values(outcome=status.value, applied_at=now)
            )
        return result.rowcount > 0

    # step 5
    def _expire_overdue(self, now: datetime, report: SweepReport) -> None:
        overdue = self._select(
            subscriptions.c.state.in_(CURRENT),
            subscriptions.c.expires_at.is_not(None),
            subscriptions.c.expires_at < now,
            # active + auto_renew rows belong to the renewal path
            not_(and_(subscriptions.c.state == S.ACTIVE.value, subscriptions.c.auto_renew.is_(True))),
        )
        free_plan = self.catalog.get_default_plan()
        for sub in overdue:
            self._run_item(report, sub, "expire", lambda sub=sub: self._expire_one(sub, free_plan.plan_id, now, report))

    def _expire_one(self, sub: Subscription, free_plan_id: str, now: datetime, report: SweepReport) -> None:
        result, downgrade = self.state_machine.expire_and_downgrade(
            sub.id, free_plan_id, now=now, observation=f"expired from {sub.state.value}", expected_version=sub.version
        )
        report.add(SweepItem(sub.id, sub.user_id, "expire", _outcome_of(result)))
        if downgrade is not None:
            self._emit(ev.SUBSCRIPTION_DOWNGRADED, result.after, now, {
                "from_plan_id": sub.plan_id,
                "to_plan_id": downgrade.plan_id,
                "downgrade_subscription_id": downgrade.id,
            })

    # --------------------------------------------------------------- helpers

    def _call_gateway(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        timeout = self.settings.GATEWAY_TIMEOUT_SECONDS
        started = time.monotonic()
        future = self._executor.submit(fn, *args)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            gateway_calls_total.inc(labels={"operation": operation, "result": "timeout"})
            logger.warning("[reconciler] gateway timeout", extra={"operation": operation, "timeout_seconds": timeout})
            raise GatewayTimeoutError(f"Gateway {operation} timed out after {timeout}s")
        except GatewayError as exc:
            gateway_calls_total.inc(labels={"operation": operation, "result": "error"})
            logger.warning("[reconciler] gateway error", extra={"operation": operation, "error_message": exc.message})
            raise
        except Exception as exc:
            gateway_calls_total.inc(labels={"operation": operation, "result": "error"})
            logger.warning("[reconciler] gateway failure", extra={"operation": operation, "error_message": str(exc)})
            raise GatewayError(f"Gateway {operation} failed: {exc}") from exc
        finally:
            gateway_call_duration_seconds.observe(time.monotonic() - started, labels={"operation": operation})
        gateway_calls_total.inc(labels={"operation": operation, "result": "ok"})
        return result

    def _emit(self, event_type: str, sub: Subscription, now: datetime, detail: Dict[str, Any]) -> None:
        self.events.emit(
            SubscriptionEvent(
                event_type=event_type,
                subscription_id=sub.id,
                user_id=sub.user_id,
                plan_id=sub.plan_id,
                occurred_at=now,
                detail=detail,
            )
        )

    def _record_run(self, report: SweepReport) -> None:
        with get_db_session() as session:
            session.execute(
                insert(reconciler_runs).values(
                    started_at=report.started_at,
                    finished_at=report.finished_at,
                    status=report.status,
                    trigger=report.trigger,
                    stats_json=report.counters,
                )
            )

    # ---------------------------------------------------------------- queries

    def renewal_outlook(self, now: Optional[datetime] = None, days: int = 7) -> Dict[str, Any]:
        """Subscriptions due within `days`, per-state counts and recent sweeps."""
        ts = normalize_now(now)
        horizon = ts + timedelta(days=days)
        due = self._select(
            subscriptions.c.state.in_((S.ACTIVE.value, S.PENDING_RENEWAL.value)),
            subscriptions.c.expires_at.is_not(None),
            subscriptions.c.expires_at <= horizon,
        )
        with get_db_session() as session:
            state_rows = session.execute(
                select(subscriptions.c.state, func.count().label("total")).group_by(subscriptions.c.state)
            ).fetchall()
        counts = {state.value: 0 for state in SubscriptionState}
        for row in state_rows:
            counts[row.state] = int(row.total)

        return {
            "generated_at": ts.isoformat(),
            "window_days": days,
            "counts": counts,
            "due": [
                {
                    "subscription_id": sub.id,
                    "user_id": sub.user_id,
                    "plan_id": sub.plan_id,
                    "state": sub.state.value,
                    "expires_at": sub.expires_at.isoformat() if sub.expires_at else None,
                    "auto_renew": sub.auto_renew,
                    "failed_attempts": sub.failed_attempts,
                    "next_attempt_at": sub.next_attempt_at.isoformat() if sub.next_attempt_at else None,
                }
                for sub in sorted(due, key=lambda s: s.expires_at)
            ],
            "recent_runs": self.recent_runs(),
        }

    def recent_runs(self, limit: int = 5) -> List[Dict[str, Any]]:
        with get_db_session() as session:
            rows = session.execute(
                select(reconciler_runs).order_by(reconciler_runs.c.id.desc()).limit(limit)
            ).fetchall()
        return [
            {
                "started_at": row.started_at.isoformat() if row.started_at else None,
                "finished_at": row.finished_at.isoformat() if row.finished_at else None,
                "status": row.status,
                "trigger": row.trigger,
                "stats": row.stats_json,
            }
            for row in rows
        ]


def _outcome_of(result: TransitionResult) -> str:
    return "applied" if result.applied else "skipped"
