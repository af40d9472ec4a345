"""Tests for structured logging and correlation ids."""

import json
import logging

from entitlement_engine.core.logging import (
    CorrelationFilter,
    JsonFormatter,
    PrettyFormatter,
    bind_sweep_id,
    latency_bucket_ms,
    log_event,
    request_id_ctx_var,
    sweep_id_ctx_var,
)


def _record(msg="hello", **extra):
    record = logging.makeLogRecord({"name": "entitlements.test", "levelname": "INFO", "msg": msg})
    for key, value in extra.items():
        setattr(record, key, value)
    CorrelationFilter().filter(record)
    return record


def test_json_formatter_carries_context_and_masks_secrets():
    token = request_id_ctx_var.set("rid-123")
    try:
        with bind_sweep_id("sweep-1"):
            record = _record(subscription_id=7, stripe_webhook_secret="whsec_x")
    finally:
        request_id_ctx_var.reset(token)

    payload = json.loads(JsonFormatter().format(record))
    assert payload["request_id"] == "rid-123"
    assert payload["sweep_id"] == "sweep-1"
    assert payload["subscription_id"] == 7
    assert payload["stripe_webhook_secret"] == "***"
    assert payload["message"] == "hello"


def test_pretty_formatter_tags():
    with bind_sweep_id("abc"):
        record = _record(feature="exportacion")
    line = PrettyFormatter().format(record)
    assert "[sweep=abc]" in line
    assert "feature=exportacion" in line


def test_sweep_id_is_unbound_after_block():
    with bind_sweep_id("abc"):
        pass
    record = _record()
    assert record.sweep_id is None


def test_log_event_truncates_long_fields(caplog):
    with caplog.at_level(logging.INFO, logger="entitlements"):
        log_event("info", "[test] event", user_id="u1", feature="exportacion", extra={"body": "x" * 2000})

    record = next(r for r in caplog.records if r.getMessage() == "[test] event")
    assert record.user_id == "u1"
    assert record.feature == "exportacion"
    assert record.body.endswith("...<truncated>")
    assert len(record.body) < 600


class _SweepIdCapture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.INFO)
        self.seen = []

    def emit(self, record):
        self.seen.append(sweep_id_ctx_var.get())


def test_sweep_logs_carry_sweep_id(reconciler):
    logger = logging.getLogger("entitlements.reconciler")
    capture = _SweepIdCapture()
    previous_level = logger.level
    logger.addHandler(capture)
    logger.setLevel(logging.INFO)
    try:
        reconciler.run_sweep()
        reconciler.run_sweep()
    finally:
        logger.removeHandler(capture)
        logger.setLevel(previous_level)

    assert len(capture.seen) >= 4
    assert None not in capture.seen
    assert len(set(capture.seen)) == 2


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(2000) == ">=1000ms"
