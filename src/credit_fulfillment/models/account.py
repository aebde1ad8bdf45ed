from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(DBSerializableModel):
    """
    A credit-holding account.

    `balance` is only ever changed through the balance ledger's grant and
    debit operations.
    """

    collection_name: ClassVar[str] = "accounts"

    id: str
    email: Optional[str] = None
    balance: int = Field(default=0, ge=0, description="Credits remaining.")
    external_customer_ref: Optional[str] = Field(
        default=None,
        description="Payment processor customer id, set once on first checkout.",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
