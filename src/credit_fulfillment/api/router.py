from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..errors import AccountNotFoundError, FulfillmentError, InvalidSignatureError
from ..models.api_models import (
    AccountResponse,
    CheckoutResponse,
    ConsumptionListResponse,
    ConsumptionResponse,
    GenerateRequest,
    OpenAccountRequest,
    SyncRequest,
    SyncResponse,
)
from ..models.consumption import ConsumptionRecord
from ..models.payment import FulfillmentOutcome

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Any:
    return request.app.state.services


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> str:
    # Set by the authenticating proxy in front of this service.
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identification (X-User-Id header).",
        )
    return x_user_id


def _consumption_response(record: ConsumptionRecord, credits: int) -> ConsumptionResponse:
    return ConsumptionResponse(
        id=record.id or "",
        user_id=record.user_id,
        payload=record.payload,
        created_at=record.created_at,
        credits=credits,
    )


@router.post("/accounts", response_model=AccountResponse)
async def open_account(
    payload: OpenAccountRequest,
    user_id: str = Depends(get_current_user_id),
    services: Any = Depends(get_services),
) -> AccountResponse:
    account = await services.ledger_service.open_account(user_id, email=payload.email)
    return AccountResponse(user_id=account.id, credits=account.balance)


@router.get("/credits/balance", response_model=AccountResponse)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    services: Any = Depends(get_services),
) -> AccountResponse:
    try:
        balance = await services.ledger_service.get_balance(user_id)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return AccountResponse(user_id=user_id, credits=balance)


@router.get("/credits/consumption", response_model=ConsumptionListResponse)
async def list_consumption(
    user_id: str = Depends(get_current_user_id),
    services: Any = Depends(get_services),
) -> ConsumptionListResponse:
    try:
        balance = await services.ledger_service.get_balance(user_id)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    records = await services.ledger_service.get_consumption_history(user_id, viewer_id=user_id)
    return ConsumptionListResponse(items=[_consumption_response(r, balance) for r in records])


@router.post("/generate", response_model=ConsumptionResponse)
async def generate(
    payload: GenerateRequest,
    user_id: str = Depends(get_current_user_id),
    services: Any = Depends(get_services),
):
    try:
        result = await services.spend_service.spend(
            user_id, payload.model_dump(), produce=services.producer
        )
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    if result.insufficient_balance:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "detail": "Insufficient credits for this request.",
                "code": "INSUFFICIENT_CREDITS",
                "insufficient_credits": True,
                "credits": result.balance,
                "required": result.required,
            },
        )
    return _consumption_response(result.record, result.balance)


@router.post("/stripe/checkout", response_model=CheckoutResponse)
async def create_checkout(
    user_id: str = Depends(get_current_user_id),
    services: Any = Depends(get_services),
) -> CheckoutResponse:
    try:
        session = await services.checkout_service.create_checkout(user_id)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except FulfillmentError as exc:
        logger.error("Checkout failed for %s: %s", user_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Checkout failed"
        ) from exc
    return CheckoutResponse(url=session.url or "", session_id=session.id)


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: Any = Depends(get_services),
):
    payload = await request.body()
    try:
        result = await services.fulfillment_service.handle_notification(payload, stripe_signature)
    except InvalidSignatureError as exc:
        logger.warning("Rejected processor notification: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc
    except FulfillmentError as exc:
        # Non-2xx makes the processor redeliver the event later.
        logger.error("Webhook fulfillment failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Fulfillment failed"
        ) from exc

    return {"received": True, "outcome": result.outcome.value if result else None}


@router.post("/stripe/sync", response_model=SyncResponse)
async def stripe_sync(
    payload: SyncRequest,
    user_id: str = Depends(get_current_user_id),
    services: Any = Depends(get_services),
) -> SyncResponse:
    if not payload.userId or not payload.sessionId:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="User ID and session ID required"
        )
    if payload.userId != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User mismatch")

    try:
        result = await services.fulfillment_service.sync(user_id, payload.sessionId)
    except FulfillmentError as exc:
        logger.error("Sync failed for %s: %s", payload.sessionId, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Sync failed") from exc

    if result.outcome == FulfillmentOutcome.PAYEE_MISMATCH:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Session belongs to another user")
    if result.outcome in (FulfillmentOutcome.NOT_PAID, FulfillmentOutcome.MISSING_PAYEE):
        return SyncResponse(synced=False)
    return SyncResponse(synced=True, granted=result.granted)
