from __future__ import annotations

import logging
from typing import Optional

from ..logging.ledger_logger import LedgerLogger
from ..models.payment import FULFILLED_METADATA_KEY, CheckoutSession, ClaimResult
from ..processors.base import PaymentProcessor

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """
    Per-payment-event "fulfilled" flag kept in the processor's session
    metadata.

    The claim is a read followed by a separate write; the processor offers
    no compare-and-swap. Two callers that both read the flag before either
    write lands will both be granted the claim. That window is one metadata
    round trip wide and is not closed here.
    """

    def __init__(self, processor: PaymentProcessor, ledger: LedgerLogger) -> None:
        self._processor = processor
        self._ledger = ledger

    async def try_claim(
        self,
        event_id: str,
        snapshot: Optional[CheckoutSession] = None,
        correlation_id: str | None = None,
    ) -> ClaimResult:
        """
        Claim fulfillment of a paid event.

        `snapshot` must be a session just fetched by the caller; without one
        the session is read here. A failed flag write raises `ProcessorError`
        and nothing is claimed.
        """
        session = snapshot or await self._processor.retrieve_checkout_session(event_id)
        if session.fulfilled:
            logger.debug("Event %s already fulfilled", event_id)
            return ClaimResult(event_id=event_id, claimed=False)

        # Merge so every other metadata key survives the write.
        metadata = {**session.metadata, FULFILLED_METADATA_KEY: "true"}
        await self._processor.update_checkout_session_metadata(event_id, metadata)

        await self._ledger.log_system(
            message="Fulfillment claimed",
            details={"payment_event_id": event_id},
            user_id=session.payee,
            correlation_id=correlation_id,
        )
        return ClaimResult(event_id=event_id, claimed=True)

    async def release(self, event_id: str, correlation_id: str | None = None) -> None:
        """
        Clear the flag after a claimed grant failed, so either entry point
        can retry the event.
        """
        session = await self._processor.retrieve_checkout_session(event_id)
        metadata = {**session.metadata, FULFILLED_METADATA_KEY: "false"}
        await self._processor.update_checkout_session_metadata(event_id, metadata)

        await self._ledger.log_system(
            message="Fulfillment claim released",
            details={"payment_event_id": event_id},
            user_id=session.payee,
            correlation_id=correlation_id,
        )
