"""
Application wiring.

Run with: uvicorn credit_fulfillment.app:create_app --factory
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .api.router import router
from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .config import Settings, configure_logging, settings, validate_processor_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .logging.ledger_logger import LedgerLogger
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .processors.base import PaymentProcessor
from .processors.memory import InMemoryPaymentProcessor
from .processors.stripe_processor import StripePaymentProcessor
from .services.checkout_service import CheckoutService
from .services.fulfillment_service import FulfillmentService
from .services.idempotency import IdempotencyGuard
from .services.ledger_service import LedgerService
from .services.notification_service import ChangeNotifier
from .services.spend_service import Producer, SpendService, default_producer

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: BaseDBManager
    processor: PaymentProcessor
    queue: AsyncNotificationQueue
    ledger_service: LedgerService
    spend_service: SpendService
    fulfillment_service: FulfillmentService
    checkout_service: CheckoutService
    producer: Producer


def _create_db_manager(config: Settings) -> BaseDBManager:
    if config.MONGO_URI:
        return MongoDBManager.from_client_uri(config.MONGO_URI, config.MONGO_DB)
    logger.warning("MONGO_URI not set; using the in-memory record store")
    return InMemoryDBManager()


def _create_processor(config: Settings) -> PaymentProcessor:
    if config.STRIPE_SECRET_KEY:
        validate_processor_settings(config)
        return StripePaymentProcessor(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            price_id=config.STRIPE_PRICE_ID,
        )
    logger.warning("STRIPE_SECRET_KEY not set; using the in-memory payment processor")
    return InMemoryPaymentProcessor(webhook_secret=config.STRIPE_WEBHOOK_SECRET or "whsec_local")


def build_services(
    config: Settings = settings,
    *,
    db: Optional[BaseDBManager] = None,
    processor: Optional[PaymentProcessor] = None,
    queue: Optional[AsyncNotificationQueue] = None,
    cache: Optional[AsyncCacheBackend] = None,
    producer: Producer = default_producer,
    ledger_log_path: Optional[Path] = None,
) -> Services:
    db = db or _create_db_manager(config)
    processor = processor or _create_processor(config)
    queue = queue or InMemoryNotificationQueue()
    ledger = LedgerLogger(db=db, file_path=ledger_log_path or Path(config.LEDGER_LOG_PATH))
    ledger_service = LedgerService(
        db=db,
        ledger=ledger,
        cache=cache or InMemoryAsyncCache(),
        notifier=ChangeNotifier(queue),
    )
    return Services(
        db=db,
        processor=processor,
        queue=queue,
        ledger_service=ledger_service,
        spend_service=SpendService(
            ledger_service, ledger, unit_cost=config.CREDIT_COST_PER_GENERATION
        ),
        fulfillment_service=FulfillmentService(
            processor=processor,
            guard=IdempotencyGuard(processor, ledger),
            ledger_service=ledger_service,
            ledger=ledger,
            credits_per_pack=config.CREDITS_PER_PACK,
        ),
        checkout_service=CheckoutService(db, processor, ledger, app_url=config.APP_URL),
        producer=producer,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Credit pack fulfillment")
    app.state.services = services or build_services()
    app.include_router(router)
    return app
