from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OpenAccountRequest(BaseModel):
    email: str | None = None


class AccountResponse(BaseModel):
    user_id: str
    credits: int


class CheckoutResponse(BaseModel):
    url: str
    session_id: str


class SyncRequest(BaseModel):
    # Validated by hand so missing fields map to a 400 rather than a 422.
    userId: Optional[str] = None
    sessionId: Optional[str] = None


class SyncResponse(BaseModel):
    synced: bool
    granted: bool = False


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)


class ConsumptionResponse(BaseModel):
    id: str
    user_id: str
    payload: Dict[str, Any]
    created_at: datetime
    credits: int


class ConsumptionListResponse(BaseModel):
    items: List[ConsumptionResponse]
