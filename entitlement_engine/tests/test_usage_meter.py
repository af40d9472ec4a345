"""Tests for the usage meter: atomic increments, idempotency, periods."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from entitlement_engine.core.errors import PeriodClosedError, StorageUnavailableError, ValidationError
from entitlement_engine.features.usage.service import UsageMeter

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def test_increment_creates_counter(meter):
    assert meter.get_usage("u1", "gastos_recurrentes", now=NOW) == 0
    assert meter.increment("u1", "gastos_recurrentes", now=NOW) == 1
    assert meter.increment("u1", "gastos_recurrentes", delta=3, now=NOW) == 4
    assert meter.get_usage("u1", "gastos_recurrentes", period_key="2026-03") == 4


def test_counters_are_per_user_and_feature(meter):
    meter.increment("u1", "gastos_recurrentes", now=NOW)
    meter.increment("u1", "consultas_ia_mes", now=NOW)
    meter.increment("u2", "gastos_recurrentes", now=NOW)

    assert meter.get_period_usage("u1", period_key="2026-03") == {
        "gastos_recurrentes": 1,
        "consultas_ia_mes": 1,
    }
    assert meter.get_usage("u2", "consultas_ia_mes", period_key="2026-03") == 0


def test_new_month_starts_from_zero(meter):
    meter.increment("u1", "consultas_ia_mes", delta=3, now=NOW)
    april = datetime(2026, 4, 1, 0, 0, 1, tzinfo=timezone.utc)

    assert meter.get_usage("u1", "consultas_ia_mes", now=april) == 0
    assert meter.increment("u1", "consultas_ia_mes", now=april) == 1
    assert meter.get_usage("u1", "consultas_ia_mes", period_key="2026-03") == 3


def test_concurrent_increments_are_not_lost(meter):
    total = 120

    def _bump(_):
        return meter.increment("busy", "transacciones_mes", now=NOW)

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(_bump, range(total)))

    assert meter.get_usage("busy", "transacciones_mes", now=NOW) == total
    assert sorted(results) == list(range(1, total + 1))


def test_idempotency_key_counts_once(meter):
    first = meter.increment("u1", "gastos_recurrentes", idempotency_key="req-1", now=NOW)
    again = meter.increment("u1", "gastos_recurrentes", idempotency_key="req-1", now=NOW)
    other = meter.increment("u1", "gastos_recurrentes", idempotency_key="req-2", now=NOW)

    assert first == 1
    assert again == 1
    assert other == 2
    assert meter.get_usage("u1", "gastos_recurrentes", now=NOW) == 2


def test_concurrent_duplicates_count_once(meter):
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(
            lambda _: meter.increment("u1", "consultas_ia_mes", idempotency_key="same", now=NOW),
            range(8),
        ))

    assert meter.get_usage("u1", "consultas_ia_mes", now=NOW) == 1
    assert set(results) == {1}


def test_closed_period_rejected(meter):
    with pytest.raises(PeriodClosedError):
        meter.increment("u1", "gastos_recurrentes", period_key="2026-02", now=NOW)


def test_future_and_malformed_periods_rejected(meter):
    with pytest.raises(ValidationError):
        meter.increment("u1", "gastos_recurrentes", period_key="2026-04", now=NOW)
    with pytest.raises(ValidationError):
        meter.increment("u1", "gastos_recurrentes", period_key="2026-3", now=NOW)


@pytest.mark.parametrize("delta", [0, -1, True, 1.5])
def test_delta_must_be_positive_integer(meter, delta):
    with pytest.raises(ValidationError):
        meter.increment("u1", "gastos_recurrentes", delta=delta, now=NOW)


def test_unknown_feature_rejected(meter):
    with pytest.raises(ValidationError):
        meter.increment("u1", "teleport", now=NOW)


def test_storage_failure_raises_after_retries(monkeypatch):
    meter = UsageMeter(max_retries=2)
    calls = []

    def _locked(*args, **kwargs):
        calls.append(1)
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(meter, "_increment_once", _locked)
    monkeypatch.setattr("entitlement_engine.features.usage.service._RETRY_SLEEP_SECONDS", 0)

    with pytest.raises(StorageUnavailableError):
        meter.increment("u1", "gastos_recurrentes", now=NOW)
    assert len(calls) == 3


def test_transient_failure_is_retried(monkeypatch, meter):
    real = meter._increment_once
    failures = [OperationalError("INSERT", {}, Exception("database is locked"))]

    def _flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return real(*args, **kwargs)

    monkeypatch.setattr(meter, "_increment_once", _flaky)
    monkeypatch.setattr("entitlement_engine.features.usage.service._RETRY_SLEEP_SECONDS", 0)

    assert meter.increment("u1", "gastos_recurrentes", now=NOW) == 1


def test_current_period_key(meter):
    assert meter.current_period_key(NOW) == "2026-03"
    assert meter.get_usage("u1", "gastos_recurrentes", now=NOW) == 0
