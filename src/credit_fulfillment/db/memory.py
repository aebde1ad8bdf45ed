from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional

from .base import BaseDBManager
from ..errors import AccountNotFoundError
from ..models.account import Account
from ..models.consumption import ConsumptionRecord
from ..models.ledger import LedgerEntry
from ..models.transaction import Transaction
from ..permissions import is_allowed

_journal: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar(
    "credit_fulfillment_memory_journal", default=None
)


class InMemoryDBManager(BaseDBManager):
    """
    In-memory record store used for tests and local development.

    Transactions take a per-account lock and keep an undo journal, so a
    block that raises leaves no partial writes behind. `latency` turns
    every call into a suspension point, which lets tests interleave
    concurrent requests the way a remote store would.
    """

    def __init__(self, latency: Optional[float] = None) -> None:
        self._latency = latency
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._consumption: Dict[str, ConsumptionRecord] = {}
        self._ledger: List[LedgerEntry] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    async def _io(self) -> None:
        if self._latency is not None:
            await asyncio.sleep(self._latency)

    @staticmethod
    def _record_undo(undo: Callable[[], None]) -> None:
        journal = _journal.get()
        if journal is not None:
            journal.append(undo)

    @asynccontextmanager
    async def transaction(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            journal: List[Callable[[], None]] = []
            token = _journal.set(journal)
            try:
                yield
            except BaseException:
                for undo in reversed(journal):
                    undo()
                raise
            finally:
                _journal.reset(token)

    # Accounts
    async def add_account(self, account: Account) -> Account:
        await self._io()
        existing = self._accounts.get(account.id)
        if existing is not None:
            return existing.model_copy()
        self._accounts[account.id] = account.model_copy()
        self._record_undo(lambda: self._accounts.pop(account.id, None))
        return account

    async def get_account(self, user_id: str) -> Optional[Account]:
        await self._io()
        account = self._accounts.get(user_id)
        return account.model_copy() if account else None

    async def delete_account(self, user_id: str) -> None:
        await self._io()
        self._accounts.pop(user_id, None)
        for record_id in [r.id for r in self._consumption.values() if r.user_id == user_id]:
            self._consumption.pop(record_id, None)

    async def set_external_customer_ref_if_absent(self, user_id: str, ref: str) -> str:
        await self._io()
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        if account.external_customer_ref is None:
            account.external_customer_ref = ref
            account.updated_at = datetime.now(timezone.utc)
        return account.external_customer_ref

    # Balance
    async def get_balance(self, user_id: str) -> int:
        await self._io()
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return account.balance

    async def apply_balance_delta(
        self, user_id: str, delta: int, floor: int = 0
    ) -> Optional[int]:
        await self._io()
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        previous = account.balance
        if previous + delta < floor:
            return None
        account.balance = previous + delta
        account.updated_at = datetime.now(timezone.utc)

        def undo() -> None:
            account.balance = previous

        self._record_undo(undo)
        return account.balance

    # Balance history
    async def add_transaction(self, tx: Transaction) -> Transaction:
        await self._io()
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions[tx.id] = tx
        tx_id = tx.id
        self._record_undo(lambda: self._transactions.pop(tx_id, None))
        return tx

    async def get_transactions(self, user_id: str) -> Iterable[Transaction]:
        await self._io()
        return [t for t in self._transactions.values() if t.user_id == user_id]

    # Consumption
    async def add_consumption_record(self, record: ConsumptionRecord) -> ConsumptionRecord:
        await self._io()
        if record.user_id not in self._accounts:
            raise AccountNotFoundError(record.user_id)
        if record.id is None:
            record.id = self._next_id()
        self._consumption[record.id] = record.model_copy()
        record_id = record.id
        self._record_undo(lambda: self._consumption.pop(record_id, None))
        return record

    async def get_consumption_records(
        self, user_id: str, viewer_id: Optional[str] = None
    ) -> Iterable[ConsumptionRecord]:
        await self._io()
        records = [r for r in self._consumption.values() if r.user_id == user_id]
        if viewer_id is not None:
            records = [
                r
                for r in records
                if is_allowed("consumption_records", "view", viewer_id, r.model_dump())
            ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy() for r in records]

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
