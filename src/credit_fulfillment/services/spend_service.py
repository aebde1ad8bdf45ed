from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from ..logging.ledger_logger import LedgerLogger
from ..models.consumption import ConsumptionRecord, SpendResult
from .ledger_service import LedgerService

logger = logging.getLogger(__name__)

Producer = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


async def default_producer(request: Dict[str, Any]) -> Dict[str, Any]:
    """Store the request itself as the consumed payload."""
    return dict(request)


class SpendService:
    """
    Authorizes and records consumption.

    `user_id` must come from the authenticated session, never from the
    request body.
    """

    def __init__(
        self,
        ledger_service: LedgerService,
        ledger: LedgerLogger,
        unit_cost: int = 1,
    ) -> None:
        if unit_cost <= 0:
            raise ValueError("unit_cost must be positive")
        self._ledger_service = ledger_service
        self._ledger = ledger
        self._unit_cost = unit_cost

    async def spend(
        self,
        user_id: str,
        request: Dict[str, Any],
        produce: Producer = default_producer,
        unit_cost: int | None = None,
        correlation_id: str | None = None,
    ) -> SpendResult:
        cost = self._unit_cost if unit_cost is None else unit_cost
        if cost <= 0:
            raise ValueError("unit_cost must be positive")

        # Cheap pre-check so an empty account never triggers production.
        balance = await self._ledger_service.get_balance(user_id, use_cache=False)
        if balance < cost:
            return await self._insufficient(user_id, balance, cost, correlation_id)

        payload = await produce(request)

        # The debit re-checks the balance atomically; a concurrent spend may
        # have taken the last credit since the pre-check.
        outcome = await self._ledger_service.debit_with_record(
            ConsumptionRecord(user_id=user_id, payload=payload, cost=cost),
            correlation_id=correlation_id,
        )
        if outcome is None:
            balance = await self._ledger_service.get_balance(user_id, use_cache=False)
            return await self._insufficient(user_id, balance, cost, correlation_id)

        record, new_balance = outcome
        return SpendResult(user_id=user_id, record=record, balance=new_balance, required=cost)

    async def _insufficient(
        self, user_id: str, balance: int, cost: int, correlation_id: str | None
    ) -> SpendResult:
        logger.info("Spend refused for %s: balance %s < cost %s", user_id, balance, cost)
        await self._ledger.log_transaction(
            user_id=user_id,
            message="Spend refused: insufficient credits",
            details={"balance": balance, "required": cost},
            correlation_id=correlation_id,
        )
        return SpendResult(
            user_id=user_id, insufficient_balance=True, balance=balance, required=cost
        )
