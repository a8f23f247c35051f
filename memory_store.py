"""
In-process implementations of the store protocols.

Used when DATABASE_URL is unset (local development) and by the test suite.
Each store serializes its read-modify-write sections behind one lock, which
gives the same per-document guarantees as the MongoDB conditional updates.
"""
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId

from errors import ConflictError
from promotions import as_utc
from schemas import Coupon, Offer, Order, Product, UsageRecord, utcnow


def _new_id() -> str:
    return str(ObjectId())


class InMemoryCatalogStore:
    def __init__(self):
        self._store: Dict[str, Product] = {}
        self._lock = threading.Lock()

    def find_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            p = self._store.get(product_id)
            return None if p is None else p.model_copy(deep=True)

    def list_products(self, category: Optional[str] = None, limit: int = 100) -> List[Product]:
        with self._lock:
            items = [p for p in self._store.values() if not category or p.category == category]
            return [p.model_copy(deep=True) for p in items[:limit]]

    def create_product(self, product: Product) -> Product:
        product = product.model_copy(update={"id": product.id or _new_id()}, deep=True)
        with self._lock:
            self._store[product.id] = product
        return product.model_copy(deep=True)

    def save_product(self, product: Product) -> Optional[Product]:
        with self._lock:
            if product.id not in self._store:
                return None
            self._store[product.id] = product.model_copy(deep=True)
        return product

    def delete_product(self, product_id: str) -> bool:
        with self._lock:
            return self._store.pop(product_id, None) is not None

    def adjust_stock(self, product_id, color_name, size_label, delta, sold_delta=0) -> bool:
        with self._lock:
            product = self._store.get(product_id)
            if product is None:
                return False
            if color_name is None:
                if product.stock + delta < 0:
                    return False
            else:
                size = next(
                    (s for c in product.colors if c.name == color_name
                     for s in c.sizes if s.label == size_label),
                    None,
                )
                if size is None or size.stock + delta < 0:
                    return False
                size.stock += delta
            product.stock = max(0, product.stock + delta)
            product.sold += sold_delta
            product.updated_at = utcnow()
            return True

    def release_sold(self, product_id: str, quantity: int) -> None:
        with self._lock:
            product = self._store.get(product_id)
            if product is not None:
                product.sold = max(0, product.sold - quantity)


class InMemoryOrderStore:
    def __init__(self):
        self._store: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def create_order(self, order: Order) -> Order:
        now = utcnow()
        order = order.model_copy(
            update={"id": order.id or _new_id(), "created_at": now, "updated_at": now},
            deep=True,
        )
        with self._lock:
            if order.id in self._store:
                raise ConflictError("Order already exists")
            if order.payment_id and any(o.payment_id == order.payment_id for o in self._store.values()):
                raise ConflictError("Order already exists for this payment")
            self._store[order.id] = order
        return order.model_copy(deep=True)

    def find_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            o = self._store.get(order_id)
            return None if o is None else o.model_copy(deep=True)

    def find_order_by_payment(self, payment_id: str) -> Optional[Order]:
        with self._lock:
            o = next((o for o in self._store.values() if o.payment_id == payment_id), None)
            return None if o is None else o.model_copy(deep=True)

    def list_orders(self, user_id: Optional[str] = None, limit: int = 100) -> List[Order]:
        with self._lock:
            items = [o for o in self._store.values() if not user_id or o.user_id == user_id]
            items.sort(key=lambda o: o.created_at, reverse=True)
            return [o.model_copy(deep=True) for o in items[:limit]]

    def count_orders_for_user(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for o in self._store.values() if o.user_id == user_id)

    def update_order(self, order_id: str, expected: Dict[str, Any], changes: Dict[str, Any]) -> Optional[Order]:
        with self._lock:
            order = self._store.get(order_id)
            if order is None:
                return None
            if any(getattr(order, k) != v for k, v in expected.items()):
                return None
            updated = order.model_copy(update={**changes, "updated_at": utcnow()})
            self._store[order_id] = updated
            return updated.model_copy(deep=True)

    def delete_order(self, order_id: str) -> bool:
        with self._lock:
            return self._store.pop(order_id, None) is not None


class InMemoryPromotionStore:
    def __init__(self):
        self._coupons: Dict[str, Coupon] = {}
        self._offers: Dict[str, Offer] = {}
        self._lock = threading.Lock()

    def find_coupon_by_code(self, code: str) -> Optional[Coupon]:
        code = code.strip().upper()
        with self._lock:
            c = next((c for c in self._coupons.values() if c.code == code), None)
            return None if c is None else c.model_copy(deep=True)

    def find_coupon(self, coupon_id: str) -> Optional[Coupon]:
        with self._lock:
            c = self._coupons.get(coupon_id)
            return None if c is None else c.model_copy(deep=True)

    def create_coupon(self, coupon: Coupon) -> Coupon:
        coupon = coupon.model_copy(
            update={"id": coupon.id or _new_id(), "created_at": coupon.created_at or utcnow()},
            deep=True,
        )
        with self._lock:
            if any(c.code == coupon.code for c in self._coupons.values()):
                raise ConflictError("Coupon code already exists", reason="duplicate_code")
            self._coupons[coupon.id] = coupon
        return coupon.model_copy(deep=True)

    def list_coupons(self, limit: int = 100) -> List[Coupon]:
        with self._lock:
            return [c.model_copy(deep=True) for c in list(self._coupons.values())[:limit]]

    def set_coupon_active(self, coupon_id: str, active: bool) -> Optional[Coupon]:
        with self._lock:
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                return None
            coupon.is_active = active
            return coupon.model_copy(deep=True)

    def record_coupon_usage(self, coupon_id: str, usage: UsageRecord, single_use_per_user: bool) -> bool:
        with self._lock:
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                return False
            if any(u.order_id == usage.order_id for u in coupon.used_by):
                return False
            if coupon.usage_limit > 0 and coupon.usage_count >= coupon.usage_limit:
                return False
            if single_use_per_user and usage.user_id and any(u.user_id == usage.user_id for u in coupon.used_by):
                return False
            coupon.used_by.append(usage.model_copy())
            coupon.usage_count += 1
            coupon.total_savings += usage.discount_applied
            return True

    def create_offer(self, offer: Offer) -> Offer:
        offer = offer.model_copy(update={"id": offer.id or _new_id()}, deep=True)
        with self._lock:
            self._offers[offer.id] = offer
        return offer.model_copy(deep=True)

    def find_offer(self, offer_id: str) -> Optional[Offer]:
        with self._lock:
            o = self._offers.get(offer_id)
            return None if o is None else o.model_copy(deep=True)

    def list_active_offers(self, now: datetime) -> List[Offer]:
        with self._lock:
            items = [
                o for o in self._offers.values()
                if o.is_active and as_utc(o.start_date) <= now <= as_utc(o.end_date)
            ]
            items.sort(key=lambda o: o.priority, reverse=True)
            return [o.model_copy(deep=True) for o in items]

    def set_offer_active(self, offer_id: str, active: bool) -> Optional[Offer]:
        with self._lock:
            offer = self._offers.get(offer_id)
            if offer is None:
                return None
            offer.is_active = active
            return offer.model_copy(deep=True)

    def record_offer_usage(self, offer_id: str, order_id: str, discount: float) -> bool:
        with self._lock:
            offer = self._offers.get(offer_id)
            if offer is None or order_id in offer.applied_orders:
                return False
            offer.applied_orders.append(order_id)
            offer.applied_count += 1
            offer.total_savings += discount
            return True
