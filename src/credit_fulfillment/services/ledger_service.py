from __future__ import annotations

import logging
from typing import Iterable, Optional, Tuple

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.account import Account
from ..models.consumption import ConsumptionRecord
from ..models.transaction import Transaction, TransactionType
from .notification_service import ChangeNotifier

logger = logging.getLogger(__name__)


class LedgerService:
    """
    The balance ledger.

    Owns the only two ways a balance changes: `grant_credits` and
    `debit_with_record`. Both run as one store transaction on the account
    and write a history row alongside the balance change.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        cache: Optional[AsyncCacheBackend] = None,
        notifier: Optional[ChangeNotifier] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._cache = cache
        self._notifier = notifier

    async def open_account(self, user_id: str, email: str | None = None) -> Account:
        """Create the account with a zero balance; returns the existing one if present."""
        account = await self._db.add_account(Account(id=user_id, email=email))
        await self._ledger.log_system(
            message="Account opened",
            details={"balance": account.balance},
            user_id=user_id,
        )
        return account

    async def get_account(self, user_id: str) -> Optional[Account]:
        return await self._db.get_account(user_id)

    async def get_balance(self, user_id: str, use_cache: bool = True) -> int:
        if use_cache and self._cache:
            cached = await self._cache.get(self._balance_cache_key(user_id))
            if isinstance(cached, int):
                return cached
        balance = await self._db.get_balance(user_id)
        if self._cache:
            await self._cache.set(self._balance_cache_key(user_id), balance, ttl_seconds=300)
        return balance

    async def grant_credits(
        self,
        user_id: str,
        amount: int,
        payment_event_id: str,
        correlation_id: str | None = None,
    ) -> Transaction:
        if amount <= 0:
            raise ValueError("amount must be positive")

        async with self._db.transaction(user_id):
            new_balance = await self._db.apply_balance_delta(user_id, amount)
            if new_balance is None:
                raise RuntimeError(f"positive grant refused for account {user_id!r}")

            tx = await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    credits_added=amount,
                    current_credits=new_balance,
                    transaction_type=TransactionType.GRANT,
                    payment_event_id=payment_event_id,
                    description="Credit pack purchase",
                )
            )

            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits granted",
                details={
                    "amount": amount,
                    "new_balance": new_balance,
                    "payment_event_id": payment_event_id,
                },
                correlation_id=correlation_id,
            )

        await self._after_commit(user_id, new_balance, reason="grant")
        return tx

    async def debit_with_record(
        self,
        record: ConsumptionRecord,
        correlation_id: str | None = None,
    ) -> Optional[Tuple[ConsumptionRecord, int]]:
        """
        Debit `record.cost` and store `record` as one unit of work.

        Returns the stored record and new balance, or None (nothing written)
        when the balance cannot cover the cost.
        """
        if record.cost <= 0:
            raise ValueError("cost must be positive")
        user_id = record.user_id

        async with self._db.transaction(user_id):
            new_balance = await self._db.apply_balance_delta(user_id, -record.cost)
            if new_balance is None:
                logger.info("Debit of %s refused for %s: balance too low", record.cost, user_id)
                return None

            record = await self._db.add_consumption_record(record)
            await self._db.add_transaction(
                Transaction(
                    user_id=user_id,
                    credits_deducted=record.cost,
                    current_credits=new_balance,
                    transaction_type=TransactionType.DEBIT,
                    consumption_record_id=record.id,
                )
            )

            await self._ledger.log_transaction(
                user_id=user_id,
                message="Credits deducted",
                details={
                    "amount": record.cost,
                    "new_balance": new_balance,
                    "consumption_record_id": record.id,
                },
                correlation_id=correlation_id,
            )

        await self._after_commit(user_id, new_balance, reason="debit")
        if self._notifier:
            await self._notifier.consumption_created(record)
        return record, new_balance

    async def get_credit_history(self, user_id: str) -> Iterable[Transaction]:
        return await self._db.get_transactions(user_id)

    async def has_grant_for(self, user_id: str, payment_event_id: str) -> bool:
        """True once a grant for `payment_event_id` has committed."""
        return any(
            tx.transaction_type == TransactionType.GRANT and tx.payment_event_id == payment_event_id
            for tx in await self._db.get_transactions(user_id)
        )

    async def get_consumption_history(
        self, user_id: str, viewer_id: str | None = None
    ) -> Iterable[ConsumptionRecord]:
        return await self._db.get_consumption_records(user_id, viewer_id=viewer_id)

    async def _after_commit(self, user_id: str, new_balance: int, reason: str) -> None:
        # Post-commit; errors are logged, not raised.
        if self._cache:
            try:
                await self._cache.delete(self._balance_cache_key(user_id))
            except Exception:
                logger.exception("Balance cache invalidation failed", extra={"user_id": user_id})
        if self._notifier:
            await self._notifier.balance_changed(user_id, new_balance, reason=reason)
        logger.info("Balance %s for %s: %s", reason, user_id, new_balance)

    @staticmethod
    def _balance_cache_key(user_id: str) -> str:
        return f"credit:user:{user_id}:balance"
