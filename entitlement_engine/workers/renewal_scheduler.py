"""Periodic driver for the renewal reconciler.

Runs in-process as a daemon thread (started by the app lifespan when
RECONCILER_ENABLED is set) or once from the command line:

    python -m entitlement_engine.workers.renewal_scheduler --once
"""
import argparse
import json
import logging
import threading
from datetime import datetime
from typing import Optional

from entitlement_engine.core.config import settings
from entitlement_engine.features.billing.reconciler import RenewalReconciler, SweepReport

logger = logging.getLogger("entitlements.scheduler")


class RenewalScheduler:
    def __init__(self, reconciler: RenewalReconciler, interval_seconds: Optional[float] = None):
        self.reconciler = reconciler
        self.interval_seconds = float(interval_seconds if interval_seconds is not None else settings.RECONCILE_INTERVAL_SECONDS)
        self._stop = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="renewal-scheduler", daemon=True)
        self._thread.start()
        logger.info("[scheduler] started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("[scheduler] stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self, now: Optional[datetime] = None, trigger: str = "scheduler") -> SweepReport:
        """One sweep; overlapping runs in this process are serialized."""
        with self._run_lock:
            report = self.reconciler.run_sweep(now=now, trigger=trigger)
        self.last_report = report
        return report

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                # Keep the loop alive; the next tick retries
                logger.exception("[scheduler] sweep failed")
            self._stop.wait(self.interval_seconds)


def main() -> int:
    from entitlement_engine.core.container import build_services
    from entitlement_engine.core.database import create_all_tables
    from entitlement_engine.core.logging import configure_logging
    from entitlement_engine.features.catalog.service import seed_plans

    parser = argparse.ArgumentParser(description="Run the subscription renewal reconciler.")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps (loop mode).")
    parser.add_argument("--seed", action="store_true", help="Create tables and seed the default catalog first.")
    args = parser.parse_args()

    configure_logging(settings.ENV)
    if args.seed:
        create_all_tables()
        seed_plans()

    services = build_services()
    if services.reconciler is None:
        logger.error("[scheduler] no payment gateway configured")
        return 1

    scheduler = RenewalScheduler(services.reconciler, interval_seconds=args.interval)
    try:
        if args.once:
            report = scheduler.run_once(trigger="cli")
            print(json.dumps(report.to_dict(), indent=2, default=str))
            return 0 if report.status == "success" else 2
        scheduler.start()
        while scheduler.running:
            scheduler.join(1.0)
    except KeyboardInterrupt:
        scheduler.stop()
    finally:
        services.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
