from __future__ import annotations

from uuid import uuid4

import pytest

from credit_fulfillment.cache.memory import InMemoryAsyncCache
from credit_fulfillment.db.memory import InMemoryDBManager
from credit_fulfillment.logging.ledger_logger import LedgerLogger
from credit_fulfillment.models.payment import (
    PAYEE_METADATA_KEY,
    CheckoutSession,
    PaymentStatus,
    SessionStatus,
)
from credit_fulfillment.notifications.queue import InMemoryNotificationQueue
from credit_fulfillment.processors.memory import InMemoryPaymentProcessor
from credit_fulfillment.services.fulfillment_service import FulfillmentService
from credit_fulfillment.services.idempotency import IdempotencyGuard
from credit_fulfillment.services.ledger_service import LedgerService
from credit_fulfillment.services.notification_service import ChangeNotifier
from credit_fulfillment.services.spend_service import SpendService

CREDITS_PER_PACK = 10


class BrokenCache(InMemoryAsyncCache):
    async def set(self, key, value, ttl_seconds=None):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")


def make_session(
    processor: InMemoryPaymentProcessor,
    user_id: str | None,
    paid: bool = True,
    **metadata: str,
) -> CheckoutSession:
    if user_id is not None:
        metadata[PAYEE_METADATA_KEY] = user_id
    session = CheckoutSession(
        id=f"cs_test_{uuid4().hex}",
        status=SessionStatus.COMPLETE if paid else SessionStatus.OPEN,
        payment_status=PaymentStatus.PAID if paid else PaymentStatus.UNPAID,
        metadata=metadata,
    )
    return processor.add_session(session)


@pytest.fixture
def db():
    return InMemoryDBManager()


@pytest.fixture
def processor():
    return InMemoryPaymentProcessor()


@pytest.fixture
def queue():
    return InMemoryNotificationQueue()


@pytest.fixture
def ledger(db, tmp_path):
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def ledger_service(db, ledger, queue):
    return LedgerService(db=db, ledger=ledger, notifier=ChangeNotifier(queue))


@pytest.fixture
def guard(processor, ledger):
    return IdempotencyGuard(processor, ledger)


@pytest.fixture
def fulfillment(processor, guard, ledger_service, ledger):
    return FulfillmentService(
        processor=processor,
        guard=guard,
        ledger_service=ledger_service,
        ledger=ledger,
        credits_per_pack=CREDITS_PER_PACK,
    )


@pytest.fixture
def spend_service(ledger_service, ledger):
    return SpendService(ledger_service, ledger, unit_cost=1)
