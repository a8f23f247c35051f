"""
Service wiring: picks MongoDB or in-process stores and builds the engines.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pymongo.database import Database

from checkout import CheckoutService, PaymentVerifier, verify_with_provider_secret
from database import db, ensure_indexes
from inventory import InventoryEngine
from lifecycle import OrderLifecycle
from memory_store import InMemoryCatalogStore, InMemoryOrderStore, InMemoryPromotionStore
from notifications import Notifier
from promotions import PromotionEvaluator
from repositories import CatalogStore, MongoCatalogStore, MongoOrderStore, MongoPromotionStore, OrderStore, PromotionStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    catalog: CatalogStore
    orders: OrderStore
    promotion_store: PromotionStore
    inventory: InventoryEngine
    promotions: PromotionEvaluator
    lifecycle: OrderLifecycle
    checkout: CheckoutService
    notifier: Notifier
    backend: str


def build_services(
    database: Optional[Database] = None,
    notifier: Optional[Notifier] = None,
    verify_payment: PaymentVerifier = verify_with_provider_secret,
) -> Services:
    if database is not None:
        ensure_indexes(database)
        catalog, orders, promotion_store = (
            MongoCatalogStore(database),
            MongoOrderStore(database),
            MongoPromotionStore(database),
        )
        backend = "mongodb"
    else:
        logger.warning("DATABASE_URL not set, using in-process stores")
        catalog, orders, promotion_store = InMemoryCatalogStore(), InMemoryOrderStore(), InMemoryPromotionStore()
        backend = "memory"

    inventory = InventoryEngine(catalog)
    promotions = PromotionEvaluator(promotion_store, orders)
    return Services(
        catalog=catalog,
        orders=orders,
        promotion_store=promotion_store,
        inventory=inventory,
        promotions=promotions,
        lifecycle=OrderLifecycle(orders, inventory),
        checkout=CheckoutService(inventory, promotions, orders, verify_payment),
        notifier=notifier or Notifier.from_env(),
        backend=backend,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(db)
