"""
Store protocols and their MongoDB implementations.

Every stock, usage and status mutation is a single conditional update on one
document, so concurrent requests cannot oversell a size, overrun a coupon's
usage limit or apply two transitions to the same order.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document
from errors import ConflictError, DependencyError
from promotions import upgrade_coupon_document
from schemas import Coupon, Offer, Order, Product, UsageRecord

logger = logging.getLogger(__name__)


class CatalogStore(Protocol):
    def find_product(self, product_id: str) -> Optional[Product]: ...
    def list_products(self, category: Optional[str] = None, limit: int = 100) -> List[Product]: ...
    def create_product(self, product: Product) -> Product: ...
    def save_product(self, product: Product) -> Optional[Product]: ...
    def delete_product(self, product_id: str) -> bool: ...
    def adjust_stock(self, product_id: str, color_name: Optional[str], size_label: Optional[str], delta: int, sold_delta: int = 0) -> bool: ...
    def release_sold(self, product_id: str, quantity: int) -> None: ...


class OrderStore(Protocol):
    def create_order(self, order: Order) -> Order: ...
    def find_order(self, order_id: str) -> Optional[Order]: ...
    def find_order_by_payment(self, payment_id: str) -> Optional[Order]: ...
    def list_orders(self, user_id: Optional[str] = None, limit: int = 100) -> List[Order]: ...
    def count_orders_for_user(self, user_id: str) -> int: ...
    def update_order(self, order_id: str, expected: Dict[str, Any], changes: Dict[str, Any]) -> Optional[Order]: ...
    def delete_order(self, order_id: str) -> bool: ...


class PromotionStore(Protocol):
    def find_coupon_by_code(self, code: str) -> Optional[Coupon]: ...
    def find_coupon(self, coupon_id: str) -> Optional[Coupon]: ...
    def create_coupon(self, coupon: Coupon) -> Coupon: ...
    def list_coupons(self, limit: int = 100) -> List[Coupon]: ...
    def set_coupon_active(self, coupon_id: str, active: bool) -> Optional[Coupon]: ...
    def record_coupon_usage(self, coupon_id: str, usage: UsageRecord, single_use_per_user: bool) -> bool: ...
    def create_offer(self, offer: Offer) -> Offer: ...
    def find_offer(self, offer_id: str) -> Optional[Offer]: ...
    def list_active_offers(self, now: datetime) -> List[Offer]: ...
    def set_offer_active(self, offer_id: str, active: bool) -> Optional[Offer]: ...
    def record_offer_usage(self, offer_id: str, order_id: str, discount: float) -> bool: ...


# ----- Utilities -----

def to_object_id(id_str: Optional[str]) -> Optional[ObjectId]:
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        return None


def to_str_id(doc: dict) -> dict:
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def to_document(model, exclude=("id",)) -> Dict[str, Any]:
    doc = model.model_dump(exclude=set(exclude))
    return {k: plain(v) for k, v in doc.items()}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def translate_errors(fn):
    """Surface driver failures as DependencyError."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PyMongoError as exc:
            logger.error("MongoDB call %s failed: %s", fn.__name__, exc)
            raise DependencyError("Database unavailable, please retry") from exc
    return wrapper


# ----- Catalog -----

class MongoCatalogStore:
    def __init__(self, database: Database):
        self.db = database
        self.products = database["product"]

    @translate_errors
    def find_product(self, product_id: str) -> Optional[Product]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        doc = self.products.find_one({"_id": oid})
        return Product.model_validate(to_str_id(doc)) if doc else None

    @translate_errors
    def list_products(self, category: Optional[str] = None, limit: int = 100) -> List[Product]:
        query: Dict[str, Any] = {}
        if category:
            query["category"] = category
        docs = self.products.find(query).sort("created_at", DESCENDING).limit(limit)
        return [Product.model_validate(to_str_id(d)) for d in docs]

    @translate_errors
    def create_product(self, product: Product) -> Product:
        new_id = create_document("product", to_document(product), database=self.db)
        return product.model_copy(update={"id": new_id})

    @translate_errors
    def save_product(self, product: Product) -> Optional[Product]:
        oid = to_object_id(product.id)
        if oid is None:
            return None
        res = self.products.replace_one({"_id": oid}, to_document(product))
        return product if res.matched_count else None

    @translate_errors
    def delete_product(self, product_id: str) -> bool:
        oid = to_object_id(product_id)
        if oid is None:
            return False
        return self.products.delete_one({"_id": oid}).deleted_count == 1

    @translate_errors
    def adjust_stock(self, product_id, color_name, size_label, delta, sold_delta=0) -> bool:
        """
        Add `delta` to one stock counter, and to the top-level stock so the
        variant sum holds. Negative deltas only apply while the counter can
        cover them.
        """
        oid = to_object_id(product_id)
        if oid is None:
            return False
        inc: Dict[str, int] = {"stock": delta}
        if sold_delta:
            inc["sold"] = sold_delta
        update = {"$inc": inc, "$set": {"updated_at": _now()}}

        if color_name is None:
            flt: Dict[str, Any] = {"_id": oid}
            if delta < 0:
                flt["stock"] = {"$gte": -delta}
            res = self.products.update_one(flt, update)
            return res.modified_count == 1

        size_match: Dict[str, Any] = {"label": size_label}
        if delta < 0:
            size_match["stock"] = {"$gte": -delta}
        flt = {
            "_id": oid,
            "colors": {"$elemMatch": {"name": color_name, "sizes": {"$elemMatch": size_match}}},
        }
        inc["colors.$[c].sizes.$[s].stock"] = delta
        res = self.products.update_one(
            flt,
            update,
            array_filters=[{"c.name": color_name}, {"s.label": size_label}],
        )
        return res.modified_count == 1

    @translate_errors
    def release_sold(self, product_id: str, quantity: int) -> None:
        oid = to_object_id(product_id)
        if oid is None:
            return
        self.products.update_one(
            {"_id": oid},
            [{"$set": {"sold": {"$max": [0, {"$subtract": [{"$ifNull": ["$sold", 0]}, quantity]}]}}}],
        )


# ----- Orders -----

class MongoOrderStore:
    def __init__(self, database: Database):
        self.db = database
        self.orders = database["order"]

    @translate_errors
    def create_order(self, order: Order) -> Order:
        doc = to_document(order)
        oid = to_object_id(order.id) or ObjectId()
        doc["_id"] = oid
        try:
            create_document("order", doc, database=self.db)
        except DuplicateKeyError:
            raise ConflictError("Order already exists for this payment")
        return self.find_order(str(oid))

    @translate_errors
    def find_order(self, order_id: str) -> Optional[Order]:
        oid = to_object_id(order_id)
        if oid is None:
            return None
        doc = self.orders.find_one({"_id": oid})
        return Order.model_validate(to_str_id(doc)) if doc else None

    @translate_errors
    def find_order_by_payment(self, payment_id: str) -> Optional[Order]:
        doc = self.orders.find_one({"payment_id": payment_id})
        return Order.model_validate(to_str_id(doc)) if doc else None

    @translate_errors
    def list_orders(self, user_id: Optional[str] = None, limit: int = 100) -> List[Order]:
        query = {"user_id": user_id} if user_id else {}
        docs = self.orders.find(query).sort("created_at", DESCENDING).limit(limit)
        return [Order.model_validate(to_str_id(d)) for d in docs]

    @translate_errors
    def count_orders_for_user(self, user_id: str) -> int:
        return self.orders.count_documents({"user_id": user_id})

    @translate_errors
    def update_order(self, order_id, expected, changes) -> Optional[Order]:
        oid = to_object_id(order_id)
        if oid is None:
            return None
        flt = {"_id": oid, **{k: plain(v) for k, v in expected.items()}}
        update = {"$set": {**{k: plain(v) for k, v in changes.items()}, "updated_at": _now()}}
        doc = self.orders.find_one_and_update(flt, update, return_document=ReturnDocument.AFTER)
        return Order.model_validate(to_str_id(doc)) if doc else None

    @translate_errors
    def delete_order(self, order_id: str) -> bool:
        oid = to_object_id(order_id)
        if oid is None:
            return False
        return self.orders.delete_one({"_id": oid}).deleted_count == 1


# ----- Coupons / offers -----

class MongoPromotionStore:
    def __init__(self, database: Database):
        self.db = database
        self.coupons = database["coupon"]
        self.offers = database["offer"]

    @staticmethod
    def _coupon(doc) -> Coupon:
        return Coupon.model_validate(upgrade_coupon_document(to_str_id(doc)))

    @translate_errors
    def find_coupon_by_code(self, code: str) -> Optional[Coupon]:
        doc = self.coupons.find_one({"code": code.strip().upper()})
        return self._coupon(doc) if doc else None

    @translate_errors
    def find_coupon(self, coupon_id: str) -> Optional[Coupon]:
        oid = to_object_id(coupon_id)
        if oid is None:
            return None
        doc = self.coupons.find_one({"_id": oid})
        return self._coupon(doc) if doc else None

    @translate_errors
    def create_coupon(self, coupon: Coupon) -> Coupon:
        try:
            new_id = create_document("coupon", to_document(coupon), database=self.db)
        except DuplicateKeyError:
            raise ConflictError("Coupon code already exists", reason="duplicate_code")
        return coupon.model_copy(update={"id": new_id})

    @translate_errors
    def list_coupons(self, limit: int = 100) -> List[Coupon]:
        docs = self.coupons.find({}).sort("created_at", DESCENDING).limit(limit)
        return [self._coupon(d) for d in docs]

    @translate_errors
    def set_coupon_active(self, coupon_id: str, active: bool) -> Optional[Coupon]:
        oid = to_object_id(coupon_id)
        if oid is None:
            return None
        doc = self.coupons.find_one_and_update(
            {"_id": oid},
            {"$set": {"is_active": active, "updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._coupon(doc) if doc else None

    @translate_errors
    def record_coupon_usage(self, coupon_id: str, usage: UsageRecord, single_use_per_user: bool) -> bool:
        oid = to_object_id(coupon_id)
        if oid is None:
            return False
        flt: Dict[str, Any] = {
            "_id": oid,
            "used_by.order_id": {"$ne": usage.order_id},
            "$or": [
                {"usage_limit": {"$lte": 0}},
                {"$expr": {"$lt": ["$usage_count", "$usage_limit"]}},
            ],
        }
        if single_use_per_user and usage.user_id:
            flt["used_by.user_id"] = {"$ne": usage.user_id}
        res = self.coupons.update_one(
            flt,
            {
                "$push": {"used_by": usage.model_dump()},
                "$inc": {"usage_count": 1, "total_savings": usage.discount_applied},
            },
        )
        return res.modified_count == 1

    @translate_errors
    def create_offer(self, offer: Offer) -> Offer:
        new_id = create_document("offer", to_document(offer), database=self.db)
        return offer.model_copy(update={"id": new_id})

    @translate_errors
    def find_offer(self, offer_id: str) -> Optional[Offer]:
        oid = to_object_id(offer_id)
        if oid is None:
            return None
        doc = self.offers.find_one({"_id": oid})
        return Offer.model_validate(to_str_id(doc)) if doc else None

    @translate_errors
    def list_active_offers(self, now: datetime) -> List[Offer]:
        docs = self.offers.find({
            "is_active": True,
            "start_date": {"$lte": now},
            "end_date": {"$gte": now},
        }).sort("priority", DESCENDING)
        return [Offer.model_validate(to_str_id(d)) for d in docs]

    @translate_errors
    def set_offer_active(self, offer_id: str, active: bool) -> Optional[Offer]:
        oid = to_object_id(offer_id)
        if oid is None:
            return None
        doc = self.offers.find_one_and_update(
            {"_id": oid},
            {"$set": {"is_active": active, "updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        return Offer.model_validate(to_str_id(doc)) if doc else None

    @translate_errors
    def record_offer_usage(self, offer_id: str, order_id: str, discount: float) -> bool:
        oid = to_object_id(offer_id)
        if oid is None:
            return False
        res = self.offers.update_one(
            {"_id": oid, "applied_orders": {"$ne": order_id}},
            {
                "$inc": {"applied_count": 1, "total_savings": discount},
                "$push": {"applied_orders": order_id},
            },
        )
        return res.modified_count == 1
