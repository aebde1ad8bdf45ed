from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import AccountNotFoundError, StoreError
from ..models.account import Account
from ..models.base import DBSerializableModel
from ..models.consumption import ConsumptionRecord
from ..models.ledger import LedgerEntry
from ..models.transaction import Transaction
from ..permissions import is_allowed

TModel = TypeVar("TModel", bound=DBSerializableModel)

_session: ContextVar[Optional[Any]] = ContextVar("credit_fulfillment_mongo_session", default=None)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string `_id` fields and mirrored in the `id`
    attribute of each Pydantic model.

    `transaction()` opens a multi-document transaction on a client session,
    which requires a replica set or sharded cluster. Balance changes use a
    guarded `$inc`, so they stay atomic even outside a transaction.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name])

    @asynccontextmanager
    async def transaction(self, account_id: str) -> AsyncIterator[None]:
        try:
            async with await self._db.client.start_session() as session:
                async with session.start_transaction():
                    token = _session.set(session)
                    try:
                        yield
                    finally:
                        _session.reset(token)
        except PyMongoError as exc:
            raise StoreError(f"transaction on account {account_id!r} failed: {exc}") from exc

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    # Accounts
    async def add_account(self, account: Account) -> Account:
        col = self._db[Account.collection_name]
        try:
            await col.insert_one(self._prepare_insert(account), session=_session.get())
        except DuplicateKeyError:
            existing = await self.get_account(account.id)
            if existing is not None:
                return existing
            raise
        return account

    async def get_account(self, user_id: str) -> Optional[Account]:
        col = self._db[Account.collection_name]
        doc = await col.find_one({"_id": user_id}, session=_session.get())
        return self._decode(Account, doc)

    async def delete_account(self, user_id: str) -> None:
        async with self.transaction(user_id):
            session = _session.get()
            await self._db[ConsumptionRecord.collection_name].delete_many(
                {"user_id": user_id}, session=session
            )
            await self._db[Account.collection_name].delete_one({"_id": user_id}, session=session)

    async def set_external_customer_ref_if_absent(self, user_id: str, ref: str) -> str:
        col = self._db[Account.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user_id, "external_customer_ref": {"$exists": False}},
            {
                "$set": {
                    "external_customer_ref": ref,
                    "updated_at": datetime.now(timezone.utc),
                }
            },
            return_document=ReturnDocument.AFTER,
            session=_session.get(),
        )
        if doc is None:
            account = await self.get_account(user_id)
            if account is None:
                raise AccountNotFoundError(user_id)
            doc = account.serialize_for_db()
        return doc["external_customer_ref"]

    # Balance
    async def get_balance(self, user_id: str) -> int:
        account = await self.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return account.balance

    async def apply_balance_delta(
        self, user_id: str, delta: int, floor: int = 0
    ) -> Optional[int]:
        col = self._db[Account.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user_id, "balance": {"$gte": floor - delta}},
            {"$inc": {"balance": delta}, "$set": {"updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
            session=_session.get(),
        )
        if doc is not None:
            return int(doc["balance"])
        if await self.get_account(user_id) is None:
            raise AccountNotFoundError(user_id)
        return None

    # Balance history
    async def add_transaction(self, tx: Transaction) -> Transaction:
        col = self._db[Transaction.collection_name]
        await col.insert_one(self._prepare_insert(tx), session=_session.get())
        return tx

    async def get_transactions(self, user_id: str) -> Iterable[Transaction]:
        col = self._db[Transaction.collection_name]
        cursor = col.find({"user_id": user_id}, session=_session.get()).sort("timestamp", 1)
        docs = await cursor.to_list(length=None)
        return [self._decode(Transaction, d) for d in docs if d is not None]  # type: ignore[misc]

    # Consumption
    async def add_consumption_record(self, record: ConsumptionRecord) -> ConsumptionRecord:
        col = self._db[ConsumptionRecord.collection_name]
        await col.insert_one(self._prepare_insert(record), session=_session.get())
        return record

    async def get_consumption_records(
        self, user_id: str, viewer_id: Optional[str] = None
    ) -> Iterable[ConsumptionRecord]:
        col = self._db[ConsumptionRecord.collection_name]
        cursor = col.find({"user_id": user_id}, session=_session.get()).sort(
            "created_at", DESCENDING
        )
        docs = await cursor.to_list(length=None)
        records = [self._decode(ConsumptionRecord, d) for d in docs if d is not None]
        if viewer_id is not None:
            records = [
                r
                for r in records
                if r is not None
                and is_allowed("consumption_records", "view", viewer_id, r.model_dump())
            ]
        return records  # type: ignore[return-value]

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        # Audit entries are written outside any open transaction so they survive rollback.
        await col.insert_one(self._prepare_insert(entry))
        return entry
