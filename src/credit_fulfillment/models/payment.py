from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

# Metadata keys carried on the processor-side checkout session.
PAYEE_METADATA_KEY = "userId"
FULFILLED_METADATA_KEY = "creditsProcessed"


class SessionStatus(str, Enum):
    OPEN = "open"
    COMPLETE = "complete"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    NO_PAYMENT_REQUIRED = "no_payment_required"


class CheckoutSession(BaseModel):
    """
    Snapshot of a payment event as held by the payment processor.

    Always fetched fresh; never cached between fulfillment attempts.
    """

    id: str
    status: SessionStatus = SessionStatus.OPEN
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    customer: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @property
    def payee(self) -> Optional[str]:
        return self.metadata.get(PAYEE_METADATA_KEY) or None

    @property
    def fulfilled(self) -> bool:
        return self.metadata.get(FULFILLED_METADATA_KEY) == "true"


class ProcessorEvent(BaseModel):
    """Verified notification delivered by the payment processor."""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def object_id(self) -> Optional[str]:
        obj = self.data.get("object") or {}
        return obj.get("id")


class ClaimResult(BaseModel):
    event_id: str
    claimed: bool


class FulfillmentSource(str, Enum):
    WEBHOOK = "webhook"
    EAGER = "eager"


class FulfillmentOutcome(str, Enum):
    GRANTED = "granted"
    ALREADY_FULFILLED = "already_fulfilled"
    NOT_PAID = "not_paid"
    MISSING_PAYEE = "missing_payee"
    PAYEE_MISMATCH = "payee_mismatch"


class FulfillmentResult(BaseModel):
    event_id: str
    source: FulfillmentSource
    outcome: FulfillmentOutcome
    user_id: Optional[str] = None
    credits_granted: int = 0
    balance_after: Optional[int] = None

    @property
    def granted(self) -> bool:
        return self.outcome == FulfillmentOutcome.GRANTED
