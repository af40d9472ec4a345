"""
Payment gateway protocol.

Defines the interface the reconciler and webhook route use to talk to the
payment processor (Stripe, Mercado Pago, ...). This allows swapping gateways
without changing lifecycle logic.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol


class OutcomeStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"

    @property
    def is_final(self) -> bool:
        return self is not OutcomeStatus.PENDING


@dataclass(frozen=True)
class ChargeHandle:
    """A charge the gateway accepted for processing."""
    gateway_reference_id: str
    checkout_url: Optional[str] = None


@dataclass(frozen=True)
class ChargeOutcome:
    """Gateway verdict for one charge (also the parsed webhook payload)."""
    gateway_reference_id: str
    status: OutcomeStatus
    detail: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RenewalAttempt:
    """Outcome observed for a subscription's renewal charge during a sweep."""
    subscription_id: int
    gateway_reference_id: str
    outcome: OutcomeStatus
    observed_at: datetime


class GatewayAdapter(Protocol):
    """
    Protocol for payment gateways.

    Implementations must:
    - Honour idempotency keys on initiate_charge (same key, same charge)
    - Never raise for a charge that simply has no verdict yet (return PENDING)
    - Verify webhook authenticity before parsing
    """

    def initiate_charge(
        self,
        subscription_id: int,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ChargeHandle:
        """
        Start a renewal charge.

        Raises:
            GatewayError: If the gateway could not accept the charge
        """
        ...

    def get_outcome(self, gateway_reference_id: str) -> ChargeOutcome:
        """
        Poll the current verdict of a charge.

        Raises:
            GatewayError: If the gateway could not be reached
        """
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> ChargeOutcome:
        """
        Verify and parse an inbound notification.

        Raises:
            GatewayWebhookError: If the signature or payload is invalid
        """
        ...
