from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Dict, Optional

import stripe

from .base import PaymentProcessor
from ..errors import InvalidSignatureError, ProcessorError
from ..models.payment import PAYEE_METADATA_KEY, CheckoutSession, ProcessorEvent

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, Mapping):
        return dict(obj)
    raise TypeError(f"cannot convert {type(obj).__name__} to dict")


class StripePaymentProcessor(PaymentProcessor):
    """
    Stripe Checkout adapter. The SDK is blocking, so calls run in a worker
    thread.
    """

    def __init__(self, api_key: str, webhook_secret: str, price_id: str) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._price_id = price_id

    async def _call(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe call failed: %s", exc, extra={"error_type": type(exc).__name__}
            )
            raise ProcessorError(str(exc)) from exc

    @staticmethod
    def _to_session(session: Any) -> CheckoutSession:
        data = _as_dict(session)
        return CheckoutSession(
            id=data["id"],
            status=data.get("status") or "open",
            payment_status=data.get("payment_status") or "unpaid",
            customer=data.get("customer") if isinstance(data.get("customer"), str) else None,
            url=data.get("url"),
            metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
        )

    async def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        kwargs: Dict[str, Any] = {"metadata": {PAYEE_METADATA_KEY: user_id}}
        if email:
            kwargs["email"] = email
        customer = await self._call(stripe.Customer.create, **kwargs)
        return customer["id"]

    async def create_checkout_session(
        self, customer_ref: str, user_id: str, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            customer=customer_ref,
            client_reference_id=user_id,
            line_items=[{"price": self._price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={PAYEE_METADATA_KEY: user_id},
        )
        return self._to_session(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        session = await self._call(stripe.checkout.Session.retrieve, session_id)
        return self._to_session(session)

    async def update_checkout_session_metadata(
        self, session_id: str, metadata: Dict[str, str]
    ) -> CheckoutSession:
        session = await self._call(stripe.checkout.Session.modify, session_id, metadata=metadata)
        return self._to_session(session)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        if not signature:
            raise InvalidSignatureError("missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise InvalidSignatureError(f"invalid payload: {exc}") from exc
        data = _as_dict(event)
        return ProcessorEvent(
            id=data["id"],
            type=data["type"],
            data=data.get("data") or {},
        )
