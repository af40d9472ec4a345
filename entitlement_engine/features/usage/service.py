"""
entitlement_engine/features/usage/service.py

Usage meter for count-limited features.

Handles:
- Atomic per-period increments (single upsert, no read-then-write)
- Idempotent increments keyed by caller-supplied idempotency keys
- Period usage queries
"""

import logging
import re
import time
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from entitlement_engine.core.clock import normalize_now, period_key_for
from entitlement_engine.core.config import settings
from entitlement_engine.core.database import (
    dialect_insert,
    get_db_session,
    is_transient_error,
    usage_counters,
    usage_idempotency,
)
from entitlement_engine.core.errors import PeriodClosedError, StorageUnavailableError, ValidationError
from entitlement_engine.core.metrics import usage_increments_total
from entitlement_engine.features.catalog.service import validate_feature


logger = logging.getLogger("entitlements.usage")

_PERIOD_KEY_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
_RETRY_SLEEP_SECONDS = 0.05


class UsageMeter:
    """
    Monotonic per-(user, feature, month) counters.

    There is intentionally no reset: a new calendar month starts a new row,
    and rows of closed months are never written again.
    """

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = settings.USAGE_INCREMENT_RETRIES if max_retries is None else max_retries

    def current_period_key(self, now: Optional[datetime] = None) -> str:
        return period_key_for(normalize_now(now))

    def _check_period(self, period_key: Optional[str], now: Optional[datetime]) -> str:
        current = self.current_period_key(now)
        if period_key is None:
            return current
        if not _PERIOD_KEY_RE.match(period_key):
            raise ValidationError(f"Invalid period key: {period_key!r} (expected YYYY-MM)")
        if period_key < current:
            raise PeriodClosedError(f"Period {period_key} is closed; current period is {current}")
        if period_key > current:
            raise ValidationError(f"Period {period_key} has not started; current period is {current}")
        return period_key

    def get_usage(self, user_id: str, feature: str, period_key: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Count for (user, feature, period); 0 when nothing was recorded."""
        validate_feature(feature)
        period_key = period_key or self.current_period_key(now)
        with get_db_session() as session:
            value = session.execute(
                select(usage_counters.c.count).where(
                    usage_counters.c.user_id == user_id,
                    usage_counters.c.feature == feature,
                    usage_counters.c.period_key == period_key,
                )
            ).scalar()
        return int(value or 0)

    def get_period_usage(self, user_id: str, period_key: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, int]:
        period_key = period_key or self.current_period_key(now)
        with get_db_session() as session:
            rows = session.execute(
                select(usage_counters.c.feature, usage_counters.c.count.label("usage_count")).where(
                    usage_counters.c.user_id == user_id,
                    usage_counters.c.period_key == period_key,
                )
            ).fetchall()
        return {row.feature: int(row.usage_count) for row in rows}

    def increment(
        self,
        user_id: str,
        feature: str,
        period_key: Optional[str] = None,
        delta: int = 1,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Add `delta` to the counter of the current period and return the new count.

        With an idempotency key, only the first call for that key counts;
        repeats return the value the first call produced.

        Raises:
            ValidationError: non-positive delta, unknown feature, future period
            PeriodClosedError: period already elapsed
            StorageUnavailableError: store kept failing after retries
        """
        validate_feature(feature)
        if isinstance(delta, bool) or not isinstance(delta, int) or delta < 1:
            raise ValidationError(f"delta must be a positive integer, got {delta!r}")
        period_key = self._check_period(period_key, now)

        attempt = 0
        while True:
            try:
                count, duplicate = self._increment_once(user_id, feature, period_key, delta, idempotency_key)
                break
            except OperationalError as exc:
                if not is_transient_error(exc) or attempt >= self.max_retries:
                    logger.error(
                        "[usage] increment failed",
                        extra={"user_id": user_id, "feature": feature, "period_key": period_key, "attempts": attempt + 1},
                    )
                    usage_increments_total.inc(labels={"result": "error"})
                    raise StorageUnavailableError(f"Usage store unavailable: {exc.orig if hasattr(exc, 'orig') else exc}") from exc
                attempt += 1
                time.sleep(_RETRY_SLEEP_SECONDS * attempt)

        usage_increments_total.inc(labels={"result": "duplicate" if duplicate else "applied"})
        logger.info(
            "[usage] increment",
            extra={
                "user_id": user_id,
                "feature": feature,
                "period_key": period_key,
                "delta": delta,
                "count": count,
                "duplicate": duplicate,
            },
        )
        return count

    def _increment_once(self, user_id, feature, period_key, delta, idempotency_key):
        with get_db_session() as session:
            if idempotency_key:
                claim = (
                    dialect_insert(session, usage_idempotency)
                    .values(
                        user_id=user_id,
                        feature=feature,
                        period_key=period_key,
                        idempotency_key=idempotency_key,
                    )
                    .on_conflict_do_nothing(
                        index_elements=["user_id", "feature", "period_key", "idempotency_key"]
                    )
                    .returning(usage_idempotency.c.id)
                )
                claimed_id = session.execute(claim).scalar()
                if claimed_id is None:
                    recorded = session.execute(
                        select(usage_idempotency.c.count_after).where(
                            usage_idempotency.c.user_id == user_id,
                            usage_idempotency.c.feature == feature,
                            usage_idempotency.c.period_key == period_key,
                            usage_idempotency.c.idempotency_key == idempotency_key,
                        )
                    ).scalar()
                    if recorded is None:
                        recorded = session.execute(
                            select(usage_counters.c.count).where(
                                usage_counters.c.user_id == user_id,
                                usage_counters.c.feature == feature,
                                usage_counters.c.period_key == period_key,
                            )
                        ).scalar()
                    return int(recorded or 0), True

            stmt = dialect_insert(session, usage_counters).values(
                user_id=user_id,
                feature=feature,
                period_key=period_key,
                count=delta,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "feature", "period_key"],
                set_={
                    "count": usage_counters.c.count + delta,
                    "updated_at": normalize_now(None),
                },
            ).returning(usage_counters.c.count)
            count = int(session.execute(stmt).scalar())

            if idempotency_key:
                session.execute(
                    update(usage_idempotency)
                    .where(usage_idempotency.c.id == claimed_id)
                    .values(count_after=count)
                )
            return count, False
