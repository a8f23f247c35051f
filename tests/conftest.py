from datetime import datetime, timezone

import pytest

from catalog import normalize_product
from inventory import InventoryEngine
from lifecycle import OrderLifecycle
from memory_store import InMemoryCatalogStore, InMemoryOrderStore, InMemoryPromotionStore
from promotions import PromotionEvaluator
from schemas import Color, Product, Size

# Monday 2 March 2026, 12:00 in Asia/Kolkata
NOW = datetime(2026, 3, 2, 6, 30, tzinfo=timezone.utc)


@pytest.fixture
def catalog():
    return InMemoryCatalogStore()


@pytest.fixture
def orders():
    return InMemoryOrderStore()


@pytest.fixture
def promotion_store():
    return InMemoryPromotionStore()


@pytest.fixture
def inventory(catalog):
    return InventoryEngine(catalog)


@pytest.fixture
def lifecycle(orders, inventory):
    return OrderLifecycle(orders, inventory)


@pytest.fixture
def evaluator(promotion_store, orders):
    return PromotionEvaluator(promotion_store, orders)


@pytest.fixture
def tee(catalog):
    """Red tee: M has 5 units, L has 1 unit capped at 1 per order."""
    product = Product(
        name="Tee",
        category="tops",
        price=500,
        colors=[
            Color(name="Red", hex="#ff0000", sizes=[Size(label="M", stock=5), Size(label="L", stock=1, max=1)]),
        ],
    )
    return catalog.create_product(normalize_product(product))


@pytest.fixture
def mug(catalog):
    product = Product(name="Mug", category="home", price=200, stock=3, max_order=2)
    return catalog.create_product(normalize_product(product))


def size_stock(catalog, product_id, color="Red", size="M"):
    product = catalog.find_product(product_id)
    return next(s.stock for c in product.colors if c.name == color for s in c.sizes if s.label == size)
