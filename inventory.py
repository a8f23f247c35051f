"""
Inventory reservation engine.

A reservation validates every cart line against current stock and order
limits before touching anything, then applies one conditional decrement per
line. A decrement that loses a race against another checkout undoes the
decrements already applied, so a failed reservation leaves no partial state.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Sequence, Tuple

from catalog import StockCounter, VariantIndex
from errors import (
    InsufficientStock,
    OrderLimitExceeded,
    ProductNotFound,
    ShopError,
    ValidationError,
    VariantNotFound,
)
from schemas import Product, StockChange

if TYPE_CHECKING:
    from repositories import CatalogStore

logger = logging.getLogger(__name__)


class StockLine(Protocol):
    product_id: str
    color_name: Optional[str]
    size_label: Optional[str]
    quantity: int


@dataclass(frozen=True)
class Allocation:
    product_id: str
    product_name: str
    color_name: Optional[str]
    size_label: Optional[str]
    quantity: int
    unit_price: float = 0
    category: Optional[str] = None

    def describe(self) -> str:
        if self.color_name is None:
            return self.product_name
        return f"{self.product_name} ({self.color_name} - {self.size_label})"


class InventoryEngine:
    def __init__(self, catalog: "CatalogStore"):
        self.catalog = catalog

    def _load(self, cache: Dict[str, Tuple[Product, VariantIndex]], product_id: str) -> Tuple[Product, VariantIndex]:
        if product_id not in cache:
            product = self.catalog.find_product(product_id)
            if product is None:
                raise ProductNotFound(f"Product not found ({product_id})")
            cache[product_id] = (product, VariantIndex(product))
        return cache[product_id]

    def check_availability(self, lines: Sequence[StockLine]) -> List[Allocation]:
        """Validate the whole cart without mutating stock. Lines for the same counter are summed."""
        if not lines:
            raise ValidationError("Cart is empty")

        cache: Dict[str, Tuple[Product, VariantIndex]] = {}
        per_product: Dict[str, int] = defaultdict(int)
        per_counter: Dict[tuple, int] = defaultdict(int)
        allocations = []

        for line in lines:
            qty = line.quantity
            if qty is None or qty <= 0:
                raise ValidationError(f"Quantity must be at least 1 for product {line.product_id}")
            product, index = self._load(cache, line.product_id)
            counter: StockCounter = index.resolve(line.color_name, line.size_label)

            per_product[product.id] += qty
            per_counter[counter.key] += qty
            if per_product[product.id] > product.max_order:
                raise OrderLimitExceeded(f"Max allowed per order for {product.name} is {product.max_order}")
            if counter.size_max is not None and per_counter[counter.key] > counter.size_max:
                raise OrderLimitExceeded(f"Max allowed per order for {counter.describe()} is {counter.size_max}")
            if per_counter[counter.key] > counter.available:
                raise InsufficientStock(f"Not enough stock for {counter.describe()}.")

            allocations.append(Allocation(
                product_id=product.id,
                product_name=product.name,
                color_name=counter.color_name,
                size_label=counter.size_label,
                quantity=qty,
                unit_price=product.unit_price,
                category=product.category,
            ))
        return allocations

    def reserve(self, lines: Sequence[StockLine]) -> List[Allocation]:
        allocations = self.check_availability(lines)
        applied: List[Allocation] = []
        for a in allocations:
            ok = self.catalog.adjust_stock(a.product_id, a.color_name, a.size_label, -a.quantity, sold_delta=a.quantity)
            if not ok:
                logger.warning("Stock for %s changed during reservation, undoing %d line(s)", a.describe(), len(applied))
                self._undo(applied)
                raise InsufficientStock(f"Not enough stock for {a.describe()}.")
            applied.append(a)
        logger.info("Reserved %d line(s): %s", len(applied), ", ".join(f"{a.describe()} x{a.quantity}" for a in applied))
        return allocations

    def _undo(self, applied: List[Allocation]) -> None:
        for a in reversed(applied):
            self.catalog.adjust_stock(a.product_id, a.color_name, a.size_label, a.quantity, sold_delta=-a.quantity)

    def release(self, lines: Sequence[StockLine]) -> List[Allocation]:
        """
        Return previously reserved units to stock and take them off `sold`
        (floored at zero). Lines whose product or variant has since been
        removed are skipped. A store failure on one line is logged at error
        level with the units it could not return, and the remaining lines are
        still released. Callers guarantee this runs once per reservation.
        """
        released = []
        for line in lines:
            qty = line.quantity or 0
            if qty <= 0:
                continue
            try:
                allocation = self._release_line(line, qty)
            except ShopError as exc:
                logger.error(
                    "Could not return %d unit(s) of product %s (%s/%s) to stock: %s",
                    qty, line.product_id, line.color_name, line.size_label, exc.message,
                )
                continue
            if allocation is not None:
                released.append(allocation)
        logger.info("Released %d line(s)", len(released))
        return released

    def _release_line(self, line: StockLine, qty: int) -> Optional[Allocation]:
        product = self.catalog.find_product(line.product_id)
        if product is None:
            logger.warning("Skipping release for missing product %s", line.product_id)
            return None
        try:
            counter = VariantIndex(product).resolve(line.color_name, line.size_label)
        except VariantNotFound as exc:
            logger.warning("Skipping release: %s", exc.message)
            return None
        if not self.catalog.adjust_stock(product.id, counter.color_name, counter.size_label, qty):
            logger.warning("Skipping release for %s: stock counter vanished", counter.describe())
            return None
        self.catalog.release_sold(product.id, qty)
        return Allocation(product.id, product.name, counter.color_name, counter.size_label, qty)

    def restock(self, changes: Sequence[StockChange]) -> Tuple[int, List[str]]:
        """Admin stock additions. Returns (updated count, messages for skipped changes)."""
        updated, skipped = 0, []
        for ch in changes:
            if not ch.added_stock:
                continue
            product = self.catalog.find_product(ch.product_id)
            if product is None:
                skipped.append(f"Product not found ({ch.product_id})")
                continue
            try:
                counter = VariantIndex(product).resolve(ch.color_name, ch.size_label)
            except VariantNotFound as exc:
                skipped.append(exc.message)
                continue
            if self.catalog.adjust_stock(product.id, counter.color_name, counter.size_label, ch.added_stock):
                updated += 1
            else:
                skipped.append(f"Cannot remove {-ch.added_stock} from {counter.describe()}")
        logger.info("Restocked %d counter(s), skipped %d", updated, len(skipped))
        return updated, skipped
