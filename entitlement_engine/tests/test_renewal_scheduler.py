import time
from datetime import datetime, timedelta, timezone

from entitlement_engine.workers.renewal_scheduler import RenewalScheduler


class _StubReconciler:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def run_sweep(self, now=None, trigger="scheduler"):
        self.calls.append((now, trigger))
        if self.fail:
            raise RuntimeError("database down")
        return {"trigger": trigger}


def test_run_once_records_last_report(reconciler, subscription_service):
    sub = subscription_service.activate_paid("u1", "basico", now=datetime(2026, 1, 1, tzinfo=timezone.utc))
    scheduler = RenewalScheduler(reconciler, interval_seconds=60)

    report = scheduler.run_once(now=sub.expires_at - timedelta(hours=1), trigger="cli")

    assert scheduler.last_report is report
    assert report.trigger == "cli"
    assert report.counters["begin_renewal.applied"] == 1


def test_loop_runs_until_stopped():
    stub = _StubReconciler()
    scheduler = RenewalScheduler(stub, interval_seconds=0.05)

    scheduler.start()
    assert scheduler.running
    time.sleep(0.2)
    scheduler.stop()

    assert not scheduler.running
    assert len(stub.calls) >= 2
    assert all(trigger == "scheduler" for _, trigger in stub.calls)


def test_loop_survives_failing_sweep():
    stub = _StubReconciler(fail=True)
    scheduler = RenewalScheduler(stub, interval_seconds=0.05)

    scheduler.start()
    time.sleep(0.2)
    assert scheduler.running
    scheduler.stop()

    assert len(stub.calls) >= 2


def test_start_is_idempotent():
    stub = _StubReconciler()
    scheduler = RenewalScheduler(stub, interval_seconds=10)

    scheduler.start()
    first_thread = scheduler._thread
    scheduler.start()
    assert scheduler._thread is first_thread
    scheduler.stop()
