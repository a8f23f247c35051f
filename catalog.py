"""
Catalog helpers: product normalization on write and the color/size variant
index used to resolve cart lines to stock counters.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from errors import VariantNotFound
from schemas import Color, Product, Size, utcnow


def variant_total(product: Product) -> int:
    return sum(s.stock for c in product.colors for s in c.sizes)


def compute_mrp(product: Product) -> Optional[float]:
    if product.mrp:
        return product.mrp
    base = product.our_price if product.our_price is not None else product.price
    if product.our_price is not None and 0 < product.discount < 100 and base > 0:
        return float(round(base / (1 - product.discount / 100)))
    return product.price or None


def normalize_product(product: Product) -> Product:
    """Fill derived fields before a catalog write."""
    data = {"mrp": compute_mrp(product), "updated_at": utcnow()}
    if product.created_at is None:
        data["created_at"] = data["updated_at"]
    if product.has_variants:
        data["stock"] = variant_total(product)
    return product.model_copy(update=data)


@dataclass(frozen=True)
class StockCounter:
    """One resolvable stock counter of a product: a size, or the top-level stock."""
    product_id: str
    product_name: str
    color_name: Optional[str]
    size_label: Optional[str]
    available: int
    size_max: Optional[int] = None

    @property
    def key(self) -> Tuple[str, Optional[str], Optional[str]]:
        return (self.product_id, self.color_name, self.size_label)

    def describe(self) -> str:
        if self.color_name is None:
            return self.product_name
        return f"{self.product_name} ({self.color_name} - {self.size_label})"


class VariantIndex:
    """Case-insensitive lookup of color -> size for one product."""

    def __init__(self, product: Product):
        self.product = product
        self._colors: Dict[str, Color] = {}
        self._sizes: Dict[Tuple[str, str], Size] = {}
        for color in product.colors:
            cname = color.name.strip().lower()
            self._colors.setdefault(cname, color)
            for size in color.sizes:
                self._sizes.setdefault((cname, size.label.strip().lower()), size)

    def resolve(self, color_name: Optional[str], size_label: Optional[str]) -> StockCounter:
        product = self.product
        if not product.has_variants:
            return StockCounter(product.id, product.name, None, None, product.stock)

        if not color_name or not size_label:
            raise VariantNotFound(f"Select a color and size for {product.name}")
        cname = color_name.strip().lower()
        color = self._colors.get(cname)
        if color is None:
            raise VariantNotFound(f"Color '{color_name}' not found for {product.name}")
        size = self._sizes.get((cname, size_label.strip().lower()))
        if size is None:
            raise VariantNotFound(
                f"Size '{size_label}' not found for {product.name} ({color.name})"
            )
        # stored spellings, so store updates can match exactly
        return StockCounter(product.id, product.name, color.name, size.label, size.stock, size.max)
