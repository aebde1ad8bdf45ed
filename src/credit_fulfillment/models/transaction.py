from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel


class TransactionType(str, Enum):
    GRANT = "grant"
    DEBIT = "debit"


class Transaction(DBSerializableModel):
    """
    Balance history row written in the same store transaction as the
    balance change it describes.
    """

    collection_name: ClassVar[str] = "credit_transactions"

    id: Optional[str] = Field(default=None)
    user_id: str
    credits_added: int = 0
    credits_deducted: int = 0
    current_credits: int
    transaction_type: TransactionType
    payment_event_id: Optional[str] = Field(
        default=None, description="Checkout session that funded a grant."
    )
    consumption_record_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
