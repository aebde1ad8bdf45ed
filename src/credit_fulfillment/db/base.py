from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from ..models.account import Account
from ..models.consumption import ConsumptionRecord
from ..models.ledger import LedgerEntry
from ..models.transaction import Transaction


class BaseDBManager(ABC):
    """
    Store-agnostic async interface to the account/record store.

    Every balance mutation goes through `apply_balance_delta`, and every
    multi-record change (debit + consumption record, grant + history row)
    runs inside `transaction(account_id)` so it commits jointly or not at all.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self, account_id: str) -> AsyncIterator[None]:
        """
        Atomic unit of work scoped to one account. Writes made inside are
        rolled back if the block raises; concurrent transactions on the same
        account are serialized.
        """
        yield

    # Accounts
    @abstractmethod
    async def add_account(self, account: Account) -> Account:
        """Insert the account unless it exists; returns the stored account."""

    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def delete_account(self, user_id: str) -> None:
        """Delete the account and cascade to its consumption records."""

    @abstractmethod
    async def set_external_customer_ref_if_absent(self, user_id: str, ref: str) -> str:
        """
        Set the processor customer reference only if none is stored yet.
        Returns whichever reference is stored afterwards.
        """

    # Balance
    @abstractmethod
    async def get_balance(self, user_id: str) -> int:
        """Raises AccountNotFoundError for unknown accounts."""

    @abstractmethod
    async def apply_balance_delta(
        self, user_id: str, delta: int, floor: int = 0
    ) -> Optional[int]:
        """
        Atomically add `delta` to the balance unless the result would drop
        below `floor`. Returns the new balance, or None when refused.
        """

    # Balance history
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transactions(self, user_id: str) -> Iterable[Transaction]: ...

    # Consumption
    @abstractmethod
    async def add_consumption_record(self, record: ConsumptionRecord) -> ConsumptionRecord: ...

    @abstractmethod
    async def get_consumption_records(
        self, user_id: str, viewer_id: Optional[str] = None
    ) -> Iterable[ConsumptionRecord]:
        """
        Records owned by `user_id`, newest first. When `viewer_id` is given,
        only records the viewer may see under the access rules are returned.
        """

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
