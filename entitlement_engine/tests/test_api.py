"""HTTP contract tests for the entitlement engine API."""

import json
from datetime import timedelta

from entitlement_engine.core.errors import StorageUnavailableError

USER = {"X-User-Id": "user-1"}


def test_signup_and_current(client):
    resp = client.post("/api/subscriptions/signup", headers=USER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_id"] == "gratuito"
    assert body["state"] == "active"
    assert body["origin"] == "signup"

    current = client.get("/api/subscriptions/current", headers=USER)
    assert current.json()["id"] == body["id"]


def test_current_without_subscription_is_404(client):
    resp = client.get("/api/subscriptions/current", headers=USER)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_missing_user_header_is_401(client):
    resp = client.get("/api/entitlements/exportacion")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "http_error"


def test_entitlement_check_and_increment(client):
    client.post("/api/subscriptions/signup", headers=USER)

    first = client.get("/api/entitlements/gastos_recurrentes", headers=USER).json()
    assert first["allowed"] is True
    assert first["limit"] == 2
    assert first["remaining"] == 2

    for key in ("op-1", "op-2", "op-2"):
        resp = client.post(
            "/api/usage/gastos_recurrentes/increment",
            headers={**USER, "Idempotency-Key": key},
        )
        assert resp.status_code == 200

    assert resp.json()["count"] == 2
    denied = client.get("/api/entitlements/gastos_recurrentes", headers=USER).json()
    assert denied == {
        "allowed": False,
        "feature": "gastos_recurrentes",
        "plan_id": "gratuito",
        "limit": 2,
        "usage": 2,
        "remaining": 0,
        "upgrade_hint": "basico",
    }

    usage = client.get("/api/usage", headers=USER).json()
    assert usage["usage"] == {"gastos_recurrentes": 2}


def test_increment_with_delta(client):
    resp = client.post("/api/usage/transacciones_mes/increment", headers=USER, json={"delta": 5})
    assert resp.json()["count"] == 5

    bad = client.post("/api/usage/transacciones_mes/increment", headers=USER, json={"delta": 0})
    assert bad.status_code == 422
    assert bad.json()["error"]["code"] == "invalid_request"


def test_unknown_feature_is_validation_error(client):
    resp = client.get("/api/entitlements/teleport", headers=USER)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == resp.headers.get("x-request-id")


def test_entitlement_summary(client):
    resp = client.get("/api/entitlements", headers=USER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_id"] == "gratuito"
    assert body["subscription_id"] is None
    assert set(body["features"]) >= {"exportacion", "gastos_recurrentes"}
    assert "exportacion" in body["blocked_features"]


def test_storage_failure_fails_closed(client, services, monkeypatch):
    def _down(*args, **kwargs):
        raise StorageUnavailableError("Entitlement storage unavailable")

    monkeypatch.setattr(services.resolver, "check_and_describe", _down)
    resp = client.get("/api/entitlements/exportacion", headers=USER)

    assert resp.status_code == 503
    body = resp.json()
    assert body["allowed"] is False
    assert body["error"]["code"] == "storage_unavailable"


def test_payment_requires_cron_secret(client):
    resp = client.post("/api/billing/payments", json={"user_id": "user-1", "plan_id": "basico"})
    assert resp.status_code == 401

    wrong = client.post(
        "/api/billing/payments",
        headers={"X-Cron-Secret": "nope"},
        json={"user_id": "user-1", "plan_id": "basico"},
    )
    assert wrong.status_code == 401


def test_payment_activates_paid_plan(client, cron_headers):
    resp = client.post(
        "/api/billing/payments",
        headers=cron_headers,
        json={"user_id": "user-1", "plan_id": "premium", "reference": "pay_123"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_id"] == "premium"
    assert body["auto_renew"] is True
    assert body["last_observation"] == "payment pay_123"

    check = client.get("/api/entitlements/tareas", headers=USER).json()
    assert check["allowed"] is True
    assert check["plan_id"] == "premium"


def test_payment_for_free_plan_rejected(client, cron_headers):
    resp = client.post("/api/billing/payments", headers=cron_headers, json={"user_id": "user-1", "plan_id": "gratuito"})
    assert resp.status_code == 400


def test_cancel_flow(client, cron_headers):
    assert client.post("/api/subscriptions/cancel", headers=USER).status_code == 404

    client.post("/api/billing/payments", headers=cron_headers, json={"user_id": "user-1", "plan_id": "basico"})
    resp = client.post("/api/subscriptions/cancel", headers=USER)
    assert resp.status_code == 200
    assert resp.json()["changed"] is True
    assert resp.json()["subscription"]["state"] == "cancelled"

    again = client.post("/api/subscriptions/cancel", headers=USER)
    assert again.json()["changed"] is False

    history = client.get("/api/subscriptions/history", headers=USER).json()
    assert [row["state"] for row in history] == ["cancelled"]


def test_cancel_free_plan_is_rejected(client):
    client.post("/api/subscriptions/signup", headers=USER)

    resp = client.post("/api/subscriptions/cancel", headers=USER)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"
    assert client.get("/api/subscriptions/current", headers=USER).json()["state"] == "active"


def _pending_renewal(services):
    sub = services.subscriptions.activate_paid("user-1", "basico")
    services.reconciler.run_sweep(now=sub.expires_at - timedelta(hours=1))
    return services.state_machine.get(sub.id)


def test_webhook_applies_outcome_once(client, services):
    pending = _pending_renewal(services)
    payload = json.dumps({"reference": pending.gateway_reference_id, "status": "approved"})
    headers = {"x-fake-signature": "valid", "content-type": "application/json"}

    first = client.post("/api/billing/webhook", content=payload, headers=headers)
    assert first.status_code == 200
    assert first.json()["action"] == "approve"
    assert first.json()["outcome"] == "applied"

    second = client.post("/api/billing/webhook", content=payload, headers=headers)
    assert second.status_code == 200
    assert second.json()["outcome"] == "ignored"

    assert services.state_machine.get(pending.id).state.value == "active"


def test_webhook_bad_signature(client, services):
    resp = client.post("/api/billing/webhook", content=b"{}", headers={"x-fake-signature": "forged"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_outcome_push(client, services, cron_headers):
    pending = _pending_renewal(services)
    resp = client.post(
        "/api/billing/outcome",
        headers=cron_headers,
        json={"gateway_reference_id": pending.gateway_reference_id, "status": "rejected"},
    )
    assert resp.status_code == 200
    assert resp.json()["action"] == "reject"
    assert services.state_machine.get(pending.id).failed_attempts == 1


def test_reconcile_and_renewals(client, cron_headers):
    resp = client.post("/api/billing/reconcile", headers=cron_headers)
    assert resp.status_code == 200
    assert resp.json()["trigger"] == "http"
    assert resp.json()["status"] == "success"

    outlook = client.get("/api/billing/renewals", headers=cron_headers, params={"days": 3})
    assert outlook.status_code == 200
    assert outlook.json()["window_days"] == 3
    assert outlook.json()["recent_runs"][0]["trigger"] == "http"


def test_reinstate_requires_suspended(client, services, cron_headers):
    sub = services.subscriptions.activate_paid("user-1", "basico")
    resp = client.post(f"/api/billing/subscriptions/{sub.id}/reinstate", headers=cron_headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "invalid_transition"


def test_plans_listing(client):
    plans = client.get("/api/plans").json()
    assert [p["plan_id"] for p in plans] == ["gratuito", "basico", "premium"]
    premium = plans[2]
    assert premium["limits"]["consultas_ia_mes"] == -1
    assert premium["labels"]["consultas_ia_mes"] == "Ilimitado"
    assert plans[0]["labels"]["exportacion"] == "No incluido"


def test_health_and_metrics(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json() == {"status": "ok"}

    client.get("/api/entitlements/exportacion", headers=USER)
    metrics = client.get("/metrics").text
    assert "entitlement_checks_total" in metrics
    assert 'subscriptions_by_state{state="active"}' in metrics
    assert "http_request_duration_seconds_bucket" in metrics


def test_billing_disabled_without_gateway(test_settings):
    from fastapi.testclient import TestClient

    from entitlement_engine.core.container import build_services
    from entitlement_engine.main import create_app

    services = build_services(settings=test_settings)
    with TestClient(create_app(services=services, start_scheduler=False)) as client:
        resp = client.post("/api/billing/reconcile", headers={"X-Cron-Secret": test_settings.CRON_SECRET})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"
