from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from collections import Counter
from typing import Dict, Optional, Tuple
from uuid import uuid4

from .base import CHECKOUT_COMPLETED, PaymentProcessor
from ..errors import InvalidSignatureError, ProcessorError
from ..models.payment import (
    PAYEE_METADATA_KEY,
    CheckoutSession,
    PaymentStatus,
    ProcessorEvent,
    SessionStatus,
)


class InMemoryPaymentProcessor(PaymentProcessor):
    """
    Processor stand-in for tests and local development.

    Each async call first suspends (`latency`), then acts, so concurrent
    callers interleave between their read and their write exactly as they
    would against the real API. `fail_next` injects transient failures.
    """

    def __init__(self, webhook_secret: str = "whsec_test", latency: float = 0) -> None:
        self._secret = webhook_secret.encode()
        self._latency = latency
        self._sessions: Dict[str, CheckoutSession] = {}
        self._customers: Dict[str, Optional[str]] = {}
        self._failures: Counter[str] = Counter()
        self.calls: Counter[str] = Counter()

    async def _remote(self, operation: str) -> None:
        self.calls[operation] += 1
        await asyncio.sleep(self._latency)
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise ProcessorError(f"simulated {operation} failure")

    def fail_next(self, operation: str, times: int = 1) -> None:
        self._failures[operation] += times

    def _get(self, session_id: str) -> CheckoutSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ProcessorError(f"No such checkout.session: {session_id}")
        return session

    async def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        await self._remote("create_customer")
        ref = f"cus_{uuid4().hex[:14]}"
        self._customers[ref] = email
        return ref

    async def create_checkout_session(
        self, customer_ref: str, user_id: str, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        await self._remote("create_checkout_session")
        session_id = f"cs_test_{uuid4().hex}"
        session = CheckoutSession(
            id=session_id,
            customer=customer_ref,
            url=f"https://checkout.test/pay/{session_id}",
            metadata={PAYEE_METADATA_KEY: user_id},
        )
        self._sessions[session_id] = session
        return session.model_copy(deep=True)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        await self._remote("retrieve_checkout_session")
        return self._get(session_id).model_copy(deep=True)

    async def update_checkout_session_metadata(
        self, session_id: str, metadata: Dict[str, str]
    ) -> CheckoutSession:
        await self._remote("update_checkout_session_metadata")
        session = self._get(session_id)
        session.metadata = dict(metadata)
        return session.model_copy(deep=True)

    # Test helpers; these act instantly, outside the simulated network.
    def add_session(self, session: CheckoutSession) -> CheckoutSession:
        self._sessions[session.id] = session.model_copy(deep=True)
        return session

    def complete_payment(self, session_id: str) -> CheckoutSession:
        session = self._get(session_id)
        session.status = SessionStatus.COMPLETE
        session.payment_status = PaymentStatus.PAID
        return session.model_copy(deep=True)

    def expire_session(self, session_id: str) -> CheckoutSession:
        session = self._get(session_id)
        session.status = SessionStatus.EXPIRED
        return session.model_copy(deep=True)

    def session(self, session_id: str) -> CheckoutSession:
        return self._get(session_id).model_copy(deep=True)

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def build_event(self, session_id: str, event_type: str = CHECKOUT_COMPLETED) -> Tuple[bytes, str]:
        """Serialize and sign a notification for `session_id`."""
        session = self._get(session_id)
        payload = json.dumps(
            {
                "id": f"evt_{uuid4().hex}",
                "type": event_type,
                "data": {"object": session.model_dump(mode="json")},
            }
        ).encode()
        return payload, self.sign(payload)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise InvalidSignatureError("signature mismatch")
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise InvalidSignatureError(f"invalid payload: {exc}") from exc
        return ProcessorEvent(id=data["id"], type=data["type"], data=data.get("data") or {})
