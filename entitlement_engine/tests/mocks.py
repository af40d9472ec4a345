import json
import threading
import time
from typing import Dict, List

from entitlement_engine.core.errors import GatewayError, GatewayRejectedError, GatewayWebhookError
from entitlement_engine.features.billing.gateway import ChargeHandle, ChargeOutcome, OutcomeStatus


class FakeGateway:
    """In-memory GatewayAdapter honouring idempotency keys."""

    def __init__(self):
        self.charges: Dict[str, dict] = {}
        self.by_key: Dict[str, str] = {}
        self.initiate_calls: List[dict] = []
        self.outcome_calls: List[str] = []
        self.fail_initiate = False
        self.decline_initiate = False
        self.fail_outcome = False
        self.delay_seconds = 0.0
        self.default_status = OutcomeStatus.PENDING
        self._lock = threading.Lock()
        self._seq = 0

    def initiate_charge(self, subscription_id, amount, currency, metadata, idempotency_key) -> ChargeHandle:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        with self._lock:
            self.initiate_calls.append({
                "subscription_id": subscription_id,
                "amount": amount,
                "currency": currency,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            })
            if self.decline_initiate:
                raise GatewayRejectedError("card declined")
            if self.fail_initiate:
                raise GatewayError("gateway down")
            if idempotency_key in self.by_key:
                reference = self.by_key[idempotency_key]
            else:
                self._seq += 1
                reference = f"ch_{self._seq}"
                self.by_key[idempotency_key] = reference
                self.charges[reference] = {
                    "subscription_id": subscription_id,
                    "amount": amount,
                    "currency": currency,
                    "status": self.default_status,
                }
        return ChargeHandle(gateway_reference_id=reference, checkout_url=f"https://pay.example/{reference}")

    def get_outcome(self, gateway_reference_id: str) -> ChargeOutcome:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        with self._lock:
            self.outcome_calls.append(gateway_reference_id)
            if self.fail_outcome:
                raise GatewayError("gateway down")
            charge = self.charges.get(gateway_reference_id)
        status = charge["status"] if charge else OutcomeStatus.PENDING
        return ChargeOutcome(gateway_reference_id=gateway_reference_id, status=status, detail="fake")

    def parse_webhook(self, headers, body: bytes) -> ChargeOutcome:
        if headers.get("x-fake-signature") != "valid":
            raise GatewayWebhookError("Invalid signature")
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise GatewayWebhookError(f"Invalid payload: {e}")
        return ChargeOutcome(
            gateway_reference_id=payload["reference"],
            status=OutcomeStatus(payload["status"]),
            detail="fake webhook",
        )

    def settle(self, gateway_reference_id: str, status: OutcomeStatus) -> None:
        with self._lock:
            self.charges[gateway_reference_id]["status"] = status
