from __future__ import annotations

import logging

from ..db.base import BaseDBManager
from ..errors import AccountNotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.payment import CheckoutSession
from ..processors.base import PaymentProcessor

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Starts a credit-pack purchase.

    The processor customer is created on first checkout and stored on the
    account; later checkouts reuse it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        processor: PaymentProcessor,
        ledger: LedgerLogger,
        app_url: str,
    ) -> None:
        self._db = db
        self._processor = processor
        self._ledger = ledger
        self._app_url = app_url.rstrip("/")

    async def ensure_customer_ref(self, user_id: str) -> str:
        account = await self._db.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        if account.external_customer_ref:
            return account.external_customer_ref

        created = await self._processor.create_customer(user_id, email=account.email)
        stored = await self._db.set_external_customer_ref_if_absent(user_id, created)
        if stored != created:
            # A concurrent checkout stored its customer first.
            logger.info("Discarding duplicate processor customer %s for %s", created, user_id)
        else:
            await self._ledger.log_system(
                message="Processor customer linked",
                details={"external_customer_ref": stored},
                user_id=user_id,
            )
        return stored

    async def create_checkout(self, user_id: str) -> CheckoutSession:
        customer_ref = await self.ensure_customer_ref(user_id)
        session = await self._processor.create_checkout_session(
            customer_ref,
            user_id,
            success_url=f"{self._app_url}/purchase/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self._app_url}/purchase/cancel",
        )
        logger.info("Checkout session %s created for %s", session.id, user_id)
        return session
