"""Tests for the Stripe gateway adapter (Stripe SDK calls are monkeypatched)."""

import pytest
import stripe

from entitlement_engine.core.errors import GatewayError, GatewayRejectedError, GatewayWebhookError
from entitlement_engine.features.billing import stripe_gateway
from entitlement_engine.features.billing.gateway import OutcomeStatus
from entitlement_engine.features.billing.stripe_gateway import StripeGateway, outcome_from_session


class _Session:
    def __init__(self, **fields):
        self.__dict__.update(fields)


@pytest.fixture
def gateway():
    return StripeGateway(
        secret_key="sk_test_123",
        webhook_secret="whsec_test",
        success_url="https://app.example/ok",
        cancel_url="https://app.example/ko",
    )


def test_requires_secret_key(monkeypatch):
    monkeypatch.setattr(stripe_gateway.settings, "STRIPE_SECRET_KEY", None)
    with pytest.raises(GatewayError):
        StripeGateway(secret_key=None)


def test_initiate_charge_passes_idempotency_key(gateway, monkeypatch):
    captured = {}

    def _create(**kwargs):
        captured.update(kwargs)
        return _Session(id="cs_test_1", url="https://checkout.stripe.com/cs_test_1")

    monkeypatch.setattr(stripe.checkout.Session, "create", _create)

    handle = gateway.initiate_charge(7, 499, "ARS", {"user_id": "u1", "plan_id": "basico"}, "renewal-7-abc")

    assert handle.gateway_reference_id == "cs_test_1"
    assert handle.checkout_url == "https://checkout.stripe.com/cs_test_1"
    assert captured["idempotency_key"] == "renewal-7-abc"
    assert captured["mode"] == "payment"
    assert captured["metadata"] == {"subscription_id": "7", "user_id": "u1", "plan_id": "basico"}
    price = captured["line_items"][0]["price_data"]
    assert price["unit_amount"] == 499
    assert price["currency"] == "ars"


def test_initiate_charge_wraps_stripe_errors(gateway, monkeypatch):
    def _create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", _create)
    with pytest.raises(GatewayError):
        gateway.initiate_charge(7, 499, "ARS", {}, "key")


def test_initiate_charge_card_decline_is_rejection(gateway, monkeypatch):
    def _create(**kwargs):
        raise stripe.CardError("Your card was declined.", None, "card_declined")

    monkeypatch.setattr(stripe.checkout.Session, "create", _create)
    with pytest.raises(GatewayRejectedError) as exc:
        gateway.initiate_charge(7, 499, "ARS", {}, "key")
    assert "declined" in exc.value.message


@pytest.mark.parametrize(
    "session, expected",
    [
        ({"status": "complete", "payment_status": "paid"}, OutcomeStatus.APPROVED),
        ({"status": "expired", "payment_status": "unpaid"}, OutcomeStatus.REJECTED),
        ({"status": "open", "payment_status": "unpaid"}, OutcomeStatus.PENDING),
    ],
)
def test_outcome_from_session(session, expected):
    assert outcome_from_session(session) == expected


def test_get_outcome(gateway, monkeypatch):
    monkeypatch.setattr(
        stripe.checkout.Session,
        "retrieve",
        lambda ref: {"id": ref, "status": "complete", "payment_status": "paid", "metadata": {"user_id": "u1"}},
    )

    outcome = gateway.get_outcome("cs_test_1")
    assert outcome.status == OutcomeStatus.APPROVED
    assert outcome.metadata == {"user_id": "u1"}


def test_parse_webhook_completed(gateway, monkeypatch):
    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test_1", "status": "complete", "payment_status": "paid", "metadata": {}}},
    }
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda body, sig, secret: event)

    outcome = gateway.parse_webhook({"stripe-signature": "t=1,v1=abc"}, b"{}")
    assert outcome.gateway_reference_id == "cs_test_1"
    assert outcome.status == OutcomeStatus.APPROVED


def test_parse_webhook_expired_is_rejection(gateway, monkeypatch):
    event = {"id": "evt_2", "type": "checkout.session.expired", "data": {"object": {"id": "cs_test_2", "status": "expired"}}}
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda body, sig, secret: event)

    assert gateway.parse_webhook({"stripe-signature": "sig"}, b"{}").status == OutcomeStatus.REJECTED


def test_parse_webhook_bad_signature(gateway, monkeypatch):
    def _construct(body, sig, secret):
        raise stripe.SignatureVerificationError("bad signature", sig)

    monkeypatch.setattr(stripe.Webhook, "construct_event", _construct)
    with pytest.raises(GatewayWebhookError):
        gateway.parse_webhook({"stripe-signature": "sig"}, b"{}")


def test_parse_webhook_missing_signature(gateway):
    with pytest.raises(GatewayWebhookError):
        gateway.parse_webhook({}, b"{}")


def test_parse_webhook_unsupported_event(gateway, monkeypatch):
    event = {"id": "evt_3", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda body, sig, secret: event)

    with pytest.raises(GatewayWebhookError):
        gateway.parse_webhook({"stripe-signature": "sig"}, b"{}")
