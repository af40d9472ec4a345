"""
Stripe gateway implementation.

Implements GatewayAdapter with one-off Stripe Checkout Sessions: each renewal
charge is a payment-mode session the user completes (or that the saved card
settles). Handles webhook signature verification and event parsing.
"""
import logging
from typing import Any, Dict, Optional

import stripe

from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import GatewayError, GatewayRejectedError, GatewayWebhookError
from entitlement_engine.features.billing.gateway import ChargeHandle, ChargeOutcome, OutcomeStatus


logger = logging.getLogger("entitlements.billing.stripe")

_COMPLETED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
_FAILED_EVENTS = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    # Works for plain dicts (tests, raw payloads) and StripeObject instances
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _metadata(obj: Any) -> Dict[str, str]:
    raw = _field(obj, "metadata") or {}
    return {str(key): str(raw[key]) for key in raw.keys()}


def outcome_from_session(session: Any) -> OutcomeStatus:
    """Map a Checkout Session to a charge verdict."""
    if _field(session, "payment_status") == "paid":
        return OutcomeStatus.APPROVED
    if _field(session, "status") == "expired":
        return OutcomeStatus.REJECTED
    return OutcomeStatus.PENDING


class StripeGateway:
    """Stripe implementation of GatewayAdapter protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.success_url = success_url or settings.CHECKOUT_SUCCESS_URL
        self.cancel_url = cancel_url or settings.CHECKOUT_CANCEL_URL

        if not self.secret_key:
            raise GatewayError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def initiate_charge(
        self,
        subscription_id: int,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ChargeHandle:
        """Create a payment-mode Checkout Session for one billing period."""
        session_metadata = {"subscription_id": str(subscription_id), **(metadata or {})}
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount,
                            "product_data": {"name": f"Renovación {session_metadata.get('plan_id', '')}".strip()},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                client_reference_id=str(subscription_id),
                metadata=session_metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            raise GatewayRejectedError(f"Charge declined: {e.user_message or e}")
        except stripe.APIConnectionError as e:
            raise GatewayError(f"Stripe unreachable: {e}")
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe checkout session creation failed: {e}")

        logger.info(
            "[stripe] checkout session created",
            extra={"subscription_id": subscription_id, "gateway_reference_id": session.id},
        )
        return ChargeHandle(gateway_reference_id=session.id, checkout_url=session.url)

    def get_outcome(self, gateway_reference_id: str) -> ChargeOutcome:
        try:
            session = stripe.checkout.Session.retrieve(gateway_reference_id)
        except stripe.StripeError as e:
            raise GatewayError(f"Stripe session lookup failed: {e}")

        status = outcome_from_session(session)
        return ChargeOutcome(
            gateway_reference_id=gateway_reference_id,
            status=status,
            detail=f"status={_field(session, 'status')} payment_status={_field(session, 'payment_status')}",
            metadata=_metadata(session),
        )

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> ChargeOutcome:
        """Verify Stripe webhook signature and parse the Checkout Session event."""
        if not self.webhook_secret:
            raise GatewayWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise GatewayWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise GatewayWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise GatewayWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> ChargeOutcome:
        event_type = _field(event, "type") or ""
        data = _field(_field(event, "data") or {}, "object") or {}
        reference = _field(data, "id")
        if not reference or not event_type.startswith("checkout.session."):
            raise GatewayWebhookError(f"Unsupported event type: {event_type}")

        if event_type in _FAILED_EVENTS:
            status = OutcomeStatus.REJECTED
        elif event_type in _COMPLETED_EVENTS:
            status = outcome_from_session(data)
        else:
            status = OutcomeStatus.PENDING

        return ChargeOutcome(
            gateway_reference_id=reference,
            status=status,
            detail=f"{event_type} ({_field(event, 'id')})",
            metadata=_metadata(data),
        )
