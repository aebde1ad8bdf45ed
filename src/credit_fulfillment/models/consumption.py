from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel


class ConsumptionRecord(DBSerializableModel):
    """
    One unit of consumed work, created atomically with its debit.

    Immutable once stored. Holds a backward reference to the owning
    account only.
    """

    collection_name: ClassVar[str] = "consumption_records"

    id: Optional[str] = Field(default=None)
    user_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    cost: int = 1
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SpendResult(BaseModel):
    """Either a created record or an insufficient-balance outcome."""

    user_id: str
    record: Optional[ConsumptionRecord] = None
    insufficient_balance: bool = False
    balance: int = 0
    required: int = 0

    @property
    def ok(self) -> bool:
        return self.record is not None
