from __future__ import annotations

import asyncio

import pytest

from credit_fulfillment.errors import AccountNotFoundError
from credit_fulfillment.processors.memory import InMemoryPaymentProcessor
from credit_fulfillment.services.checkout_service import CheckoutService


@pytest.fixture
def checkout(db, processor, ledger):
    return CheckoutService(db, processor, ledger, app_url="https://app.test/")


@pytest.mark.asyncio
async def test_first_checkout_links_customer_and_later_ones_reuse_it(
    checkout, processor, ledger_service, db
):
    await ledger_service.open_account("user-1", email="a@example.com")

    first = await checkout.create_checkout("user-1")
    second = await checkout.create_checkout("user-1")

    account = await db.get_account("user-1")
    assert account.external_customer_ref is not None
    assert first.customer == second.customer == account.external_customer_ref
    assert processor.calls["create_customer"] == 1
    assert first.payee == "user-1"
    assert first.url


@pytest.mark.asyncio
async def test_concurrent_first_checkouts_settle_on_one_customer(ledger, ledger_service, db):
    processor = InMemoryPaymentProcessor(latency=0.01)
    checkout = CheckoutService(db, processor, ledger, app_url="https://app.test")
    await ledger_service.open_account("user-1")

    sessions = await asyncio.gather(checkout.create_checkout("user-1"), checkout.create_checkout("user-1"))

    account = await db.get_account("user-1")
    assert {s.customer for s in sessions} == {account.external_customer_ref}


@pytest.mark.asyncio
async def test_new_sessions_start_unpaid_and_unfulfilled(checkout, processor, ledger_service):
    await ledger_service.open_account("user-1")

    session = await checkout.create_checkout("user-1")

    assert not session.is_paid
    assert not session.fulfilled


@pytest.mark.asyncio
async def test_checkout_requires_existing_account(checkout):
    with pytest.raises(AccountNotFoundError):
        await checkout.create_checkout("ghost")
