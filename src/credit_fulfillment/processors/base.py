from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..models.payment import CheckoutSession, ProcessorEvent

CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentProcessor(ABC):
    """
    Async facade over the payment processor.

    Every method is a remote round trip. Failures surface as
    `ProcessorError`; the metadata store offers no compare-and-swap.
    """

    @abstractmethod
    async def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create a processor-side customer and return its reference."""

    @abstractmethod
    async def create_checkout_session(
        self, customer_ref: str, user_id: str, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        """Create a one-pack checkout session whose metadata names `user_id` as payee."""

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession: ...

    @abstractmethod
    async def update_checkout_session_metadata(
        self, session_id: str, metadata: Dict[str, str]
    ) -> CheckoutSession:
        """Replace the session metadata with `metadata`."""

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        """
        Verify a notification signature and parse it.
        Raises InvalidSignatureError before any field is trusted.
        """
