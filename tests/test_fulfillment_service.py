from __future__ import annotations

import asyncio

import pytest

from credit_fulfillment.errors import InvalidSignatureError, ProcessorError, StoreError
from credit_fulfillment.models.payment import (
    FULFILLED_METADATA_KEY,
    FulfillmentOutcome,
    FulfillmentSource,
)
from credit_fulfillment.services.fulfillment_service import FulfillmentService
from credit_fulfillment.services.ledger_service import LedgerService
from credit_fulfillment.services.notification_service import ChangeNotifier

from conftest import CREDITS_PER_PACK, BrokenCache, make_session


async def _balance(db, user_id="user-1"):
    return await db.get_balance(user_id)


@pytest.mark.asyncio
async def test_webhook_grants_once_and_redelivery_is_a_no_op(fulfillment, processor, ledger_service, db):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    payload, signature = processor.build_event(session.id)

    first = await fulfillment.handle_notification(payload, signature)
    assert first.outcome == FulfillmentOutcome.GRANTED
    assert first.balance_after == CREDITS_PER_PACK
    assert await _balance(db) == 10

    redelivered = await fulfillment.handle_notification(payload, signature)
    assert redelivered.outcome == FulfillmentOutcome.ALREADY_FULFILLED
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_eager_path_first_then_webhook_credits_once(fulfillment, processor, ledger_service, db):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")

    eager = await fulfillment.sync("user-1", session.id)
    assert eager.granted

    payload, signature = processor.build_event(session.id)
    late = await fulfillment.handle_notification(payload, signature)
    assert late.outcome == FulfillmentOutcome.ALREADY_FULFILLED
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_repeated_invocations_of_both_paths_change_balance_once(
    fulfillment, processor, ledger_service, db
):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    payload, signature = processor.build_event(session.id)

    outcomes = []
    for _ in range(5):
        outcomes.append((await fulfillment.sync("user-1", session.id)).outcome)
        outcomes.append((await fulfillment.handle_notification(payload, signature)).outcome)

    assert outcomes.count(FulfillmentOutcome.GRANTED) == 1
    assert await _balance(db) == 10
    grants = list(await ledger_service.get_credit_history("user-1"))
    assert len(grants) == 1
    assert grants[0].payment_event_id == session.id


@pytest.mark.asyncio
async def test_unpaid_and_expired_sessions_never_change_balance(
    fulfillment, processor, ledger_service, db
):
    await ledger_service.open_account("user-1")
    pending = make_session(processor, "user-1", paid=False)
    expired = make_session(processor, "user-1", paid=False)
    processor.expire_session(expired.id)

    for session in (pending, expired):
        for _ in range(3):
            result = await fulfillment.reconcile(session.id, FulfillmentSource.WEBHOOK)
            assert result.outcome == FulfillmentOutcome.NOT_PAID
            assert (await fulfillment.sync("user-1", session.id)).outcome == FulfillmentOutcome.NOT_PAID

    assert await _balance(db) == 0
    assert not processor.session(pending.id).fulfilled
    assert processor.calls["update_checkout_session_metadata"] == 0


@pytest.mark.asyncio
async def test_session_paid_later_is_fulfilled_then(fulfillment, processor, ledger_service, db):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1", paid=False)

    assert (await fulfillment.sync("user-1", session.id)).outcome == FulfillmentOutcome.NOT_PAID
    processor.complete_payment(session.id)
    assert (await fulfillment.sync("user-1", session.id)).granted
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_concurrent_paths_racing_the_claim_window_can_double_credit(
    fulfillment, processor, ledger_service, db
):
    # Both paths read the session before either flag write lands. This is the
    # accepted residual risk of a flag store without compare-and-swap.
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    payload, signature = processor.build_event(session.id)

    eager, webhook = await asyncio.gather(
        fulfillment.sync("user-1", session.id),
        fulfillment.handle_notification(payload, signature),
    )

    assert eager.granted and webhook.granted
    assert await _balance(db) == 2 * CREDITS_PER_PACK


@pytest.mark.asyncio
async def test_attempts_after_the_flag_is_visible_never_credit_again(
    fulfillment, processor, ledger_service, db
):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    await fulfillment.sync("user-1", session.id)

    results = await asyncio.gather(
        *(fulfillment.reconcile(session.id, FulfillmentSource.WEBHOOK) for _ in range(10))
    )

    assert all(r.outcome == FulfillmentOutcome.ALREADY_FULFILLED for r in results)
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_grant_is_keyed_by_session_payee(fulfillment, processor, ledger_service, db):
    await ledger_service.open_account("user-1")
    await ledger_service.open_account("intruder")
    session = make_session(processor, "user-1")

    result = await fulfillment.sync("intruder", session.id)

    assert result.outcome == FulfillmentOutcome.PAYEE_MISMATCH
    assert not processor.session(session.id).fulfilled
    assert await _balance(db, "intruder") == 0

    payload, signature = processor.build_event(session.id)
    result = await fulfillment.handle_notification(payload, signature)
    assert result.user_id == "user-1"
    assert await _balance(db, "user-1") == 10


@pytest.mark.asyncio
async def test_paid_session_without_payee_is_not_claimed(fulfillment, processor):
    session = make_session(processor, None)

    result = await fulfillment.reconcile(session.id, FulfillmentSource.WEBHOOK)

    assert result.outcome == FulfillmentOutcome.MISSING_PAYEE
    assert not processor.session(session.id).fulfilled


@pytest.mark.asyncio
async def test_failed_grant_releases_claim_for_retry(
    fulfillment, processor, ledger_service, db, monkeypatch
):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    real_grant = ledger_service.grant_credits
    calls = {"n": 0}

    async def flaky_grant(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StoreError("ledger unavailable")
        return await real_grant(*args, **kwargs)

    monkeypatch.setattr(ledger_service, "grant_credits", flaky_grant)

    with pytest.raises(StoreError):
        await fulfillment.sync("user-1", session.id)
    assert processor.session(session.id).metadata[FULFILLED_METADATA_KEY] == "false"
    assert await _balance(db) == 0

    payload, signature = processor.build_event(session.id)
    retried = await fulfillment.handle_notification(payload, signature)
    assert retried.granted
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_cancelled_grant_releases_claim(fulfillment, processor, ledger_service, monkeypatch):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")

    async def cancelled_grant(*args, **kwargs):
        raise asyncio.CancelledError()

    monkeypatch.setattr(ledger_service, "grant_credits", cancelled_grant)

    with pytest.raises(asyncio.CancelledError):
        await fulfillment.sync("user-1", session.id)
    assert not processor.session(session.id).fulfilled


@pytest.mark.asyncio
async def test_cache_outage_after_grant_keeps_the_claim(processor, guard, db, ledger, queue):
    ledger_service = LedgerService(
        db=db, ledger=ledger, cache=BrokenCache(), notifier=ChangeNotifier(queue)
    )
    fulfillment = FulfillmentService(
        processor=processor,
        guard=guard,
        ledger_service=ledger_service,
        ledger=ledger,
        credits_per_pack=CREDITS_PER_PACK,
    )
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    payload, signature = processor.build_event(session.id)

    first = await fulfillment.handle_notification(payload, signature)
    assert first.granted
    assert processor.session(session.id).fulfilled

    redelivered = await fulfillment.handle_notification(payload, signature)
    assert redelivered.outcome == FulfillmentOutcome.ALREADY_FULFILLED
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_cancellation_after_grant_commit_keeps_the_claim(
    fulfillment, processor, ledger_service, db, monkeypatch
):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    real_grant = ledger_service.grant_credits

    async def grant_then_cancel(*args, **kwargs):
        await real_grant(*args, **kwargs)
        raise asyncio.CancelledError()

    monkeypatch.setattr(ledger_service, "grant_credits", grant_then_cancel)

    with pytest.raises(asyncio.CancelledError):
        await fulfillment.sync("user-1", session.id)
    assert processor.session(session.id).fulfilled
    assert await _balance(db) == 10

    monkeypatch.setattr(ledger_service, "grant_credits", real_grant)
    payload, signature = processor.build_event(session.id)
    retried = await fulfillment.handle_notification(payload, signature)
    assert retried.outcome == FulfillmentOutcome.ALREADY_FULFILLED
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_failed_flag_write_leaves_event_retryable(fulfillment, processor, ledger_service, db):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    processor.fail_next("update_checkout_session_metadata")

    with pytest.raises(ProcessorError):
        await fulfillment.sync("user-1", session.id)
    assert await _balance(db) == 0

    assert (await fulfillment.sync("user-1", session.id)).granted
    assert await _balance(db) == 10


@pytest.mark.asyncio
async def test_unreachable_processor_propagates(fulfillment, processor, ledger_service):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    processor.fail_next("retrieve_checkout_session")

    with pytest.raises(ProcessorError):
        await fulfillment.reconcile(session.id, FulfillmentSource.EAGER)


@pytest.mark.asyncio
async def test_notification_signature_is_verified_first(fulfillment, processor, ledger_service, db):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    payload, _ = processor.build_event(session.id)

    with pytest.raises(InvalidSignatureError):
        await fulfillment.handle_notification(payload, "forged")
    with pytest.raises(InvalidSignatureError):
        await fulfillment.handle_notification(payload, None)

    assert processor.calls["retrieve_checkout_session"] == 0
    assert await _balance(db) == 0


@pytest.mark.asyncio
async def test_other_event_types_are_ignored(fulfillment, processor, ledger_service, db):
    await ledger_service.open_account("user-1")
    session = make_session(processor, "user-1")
    payload, signature = processor.build_event(session.id, event_type="checkout.session.expired")

    assert await fulfillment.handle_notification(payload, signature) is None
    assert await _balance(db) == 0
