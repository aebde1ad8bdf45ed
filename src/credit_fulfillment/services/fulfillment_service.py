from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..logging.ledger_logger import LedgerLogger
from ..models.payment import (
    FulfillmentOutcome,
    FulfillmentResult,
    FulfillmentSource,
)
from ..processors.base import CHECKOUT_COMPLETED, PaymentProcessor
from .idempotency import IdempotencyGuard
from .ledger_service import LedgerService

logger = logging.getLogger(__name__)


class FulfillmentService:
    """
    Applies one credit pack per paid checkout session.

    Two entry points share `reconcile`: processor notifications
    (`handle_notification`) and the buyer's own post-checkout request
    (`sync`). Neither keeps state between calls; the session is re-read from
    the processor every time, and the grant only happens after this caller
    wins the idempotency claim. A failed grant releases the claim so the
    event stays retryable.
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        guard: IdempotencyGuard,
        ledger_service: LedgerService,
        ledger: LedgerLogger,
        credits_per_pack: int,
    ) -> None:
        self._processor = processor
        self._guard = guard
        self._ledger_service = ledger_service
        self._ledger = ledger
        self._credits_per_pack = credits_per_pack

    async def handle_notification(
        self, payload: bytes, signature: Optional[str]
    ) -> Optional[FulfillmentResult]:
        """
        Verify and dispatch a processor notification.

        Returns None for event types other than checkout completion.
        Raises InvalidSignatureError before any payload field is used.
        """
        event = self._processor.construct_event(payload, signature)
        if event.type != CHECKOUT_COMPLETED:
            logger.debug("Ignoring processor event %s of type %s", event.id, event.type)
            return None

        session_id = event.object_id
        if not session_id:
            logger.warning("Checkout event %s carries no session id", event.id)
            return None

        return await self.reconcile(
            session_id, FulfillmentSource.WEBHOOK, correlation_id=event.id
        )

    async def sync(self, user_id: str, session_id: str) -> FulfillmentResult:
        """Eager path, run right after the buyer is redirected back."""
        return await self.reconcile(
            session_id, FulfillmentSource.EAGER, expected_payee=user_id
        )

    async def reconcile(
        self,
        event_id: str,
        source: FulfillmentSource,
        expected_payee: str | None = None,
        correlation_id: str | None = None,
    ) -> FulfillmentResult:
        session = await self._processor.retrieve_checkout_session(event_id)

        def result(outcome: FulfillmentOutcome, **kwargs) -> FulfillmentResult:
            return FulfillmentResult(
                event_id=event_id, source=source, outcome=outcome, user_id=session.payee, **kwargs
            )

        if not session.is_paid:
            logger.info("Session %s not paid (%s); nothing to fulfil", event_id, session.payment_status.value)
            return result(FulfillmentOutcome.NOT_PAID)

        payee = session.payee
        if payee is None:
            await self._ledger.log_error(
                message="Paid session has no payee",
                details={"payment_event_id": event_id, "source": source.value},
                correlation_id=correlation_id,
            )
            return result(FulfillmentOutcome.MISSING_PAYEE)

        if expected_payee is not None and expected_payee != payee:
            logger.warning(
                "Session %s belongs to another account", event_id, extra={"requested_by": expected_payee}
            )
            return result(FulfillmentOutcome.PAYEE_MISMATCH)

        claim = await self._guard.try_claim(event_id, snapshot=session, correlation_id=correlation_id)
        if not claim.claimed:
            logger.info("Session %s already fulfilled; %s path is a no-op", event_id, source.value)
            return result(FulfillmentOutcome.ALREADY_FULFILLED)

        try:
            tx = await self._ledger_service.grant_credits(
                payee,
                self._credits_per_pack,
                payment_event_id=event_id,
                correlation_id=correlation_id,
            )
        except BaseException as exc:
            await asyncio.shield(self._release_claim(event_id, payee, exc, correlation_id))
            raise

        logger.info(
            "Granted %s credits to %s for %s via %s", self._credits_per_pack, payee, event_id, source.value
        )
        return result(
            FulfillmentOutcome.GRANTED,
            credits_granted=self._credits_per_pack,
            balance_after=tx.current_credits,
        )

    async def _release_claim(
        self, event_id: str, payee: str, cause: BaseException, correlation_id: str | None
    ) -> None:
        if await self._grant_committed(payee, event_id):
            logger.warning(
                "Grant for %s committed before failing (%r); keeping the claim", event_id, cause
            )
            return
        await self._ledger.log_error(
            message="Credit grant failed after claim",
            details={"payment_event_id": event_id, "error": repr(cause)},
            correlation_id=correlation_id,
        )
        try:
            await self._guard.release(event_id, correlation_id=correlation_id)
        except Exception:
            logger.exception("Could not release fulfillment claim for %s", event_id)
            await self._ledger.log_error(
                message="Fulfillment claim left set without grant",
                details={"payment_event_id": event_id},
                correlation_id=correlation_id,
            )

    async def _grant_committed(self, payee: str, event_id: str) -> bool:
        try:
            return await self._ledger_service.has_grant_for(payee, event_id)
        except Exception:
            # Unknown; treated as not committed so the event stays retryable.
            logger.exception("Could not check grant history for %s", event_id)
            return False
