"""UTC policy: everything the engine stores and compares is aware UTC."""

from datetime import datetime, timedelta, timezone

from entitlement_engine.core.clock import add_months, as_utc, normalize_now, period_key_for, utc_now


def test_utc_now_is_aware():
    assert utc_now().tzinfo is not None


def test_naive_values_are_read_as_utc():
    naive = datetime(2026, 4, 1, 8, 30)
    assert as_utc(naive) == datetime(2026, 4, 1, 8, 30, tzinfo=timezone.utc)
    assert as_utc(None) is None


def test_offsets_are_converted():
    buenos_aires = timezone(timedelta(hours=-3))
    local = datetime(2026, 4, 30, 22, 0, tzinfo=buenos_aires)
    assert as_utc(local) == datetime(2026, 5, 1, 1, 0, tzinfo=timezone.utc)
    # Period buckets follow UTC, not the caller's offset
    assert period_key_for(local) == "2026-05"


def test_normalize_now_defaults_to_current_time():
    before = utc_now()
    assert normalize_now(None) >= before


def test_add_months_clamps_day():
    assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc), 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2028, 1, 31, tzinfo=timezone.utc), 1) == datetime(2028, 2, 29, tzinfo=timezone.utc)
    assert add_months(datetime(2026, 11, 15, tzinfo=timezone.utc), 3) == datetime(2027, 2, 15, tzinfo=timezone.utc)
    assert add_months(datetime(2026, 6, 10, tzinfo=timezone.utc), 12) == datetime(2027, 6, 10, tzinfo=timezone.utc)
