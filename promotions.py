"""
Coupon and offer evaluation.

Eligibility runs as an ordered list of checks that stops at the first failure
and reports its reason code. Validation never writes; usage is recorded by
apply_coupon / apply_offer once an order id exists.
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from errors import ConflictError, IneligibleError, NotFoundError
from schemas import Coupon, Evaluation, Offer, OfferRanking, Principal, ScheduleSettings, UsageRecord, utcnow

if TYPE_CHECKING:
    from repositories import OrderStore, PromotionStore

logger = logging.getLogger(__name__)

STORE_TIMEZONE = ZoneInfo(os.getenv("STORE_TIMEZONE", "Asia/Kolkata"))
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
FAR_FUTURE = datetime(9999, 12, 31, tzinfo=timezone.utc)

# reason codes
NOT_FOUND = "not_found"
INACTIVE = "inactive"
EXPIRED = "expired"
NOT_STARTED = "not_started"
OUTSIDE_SCHEDULE = "outside_schedule"
NOT_FOR_USER = "not_for_user"
SEGMENT_MISMATCH = "segment_mismatch"
ALREADY_USED = "already_used"
USAGE_LIMIT_REACHED = "usage_limit_reached"
BELOW_MIN_CART_VALUE = "below_min_cart_value"
NOT_APPLICABLE = "not_applicable"
EXCLUDED_ITEMS = "excluded_items"
INVALID_DISCOUNT = "invalid_discount"


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes from older documents are taken as UTC."""
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    category: Optional[str]
    price: float
    quantity: int

    @property
    def total(self) -> float:
        return self.price * self.quantity


@dataclass(frozen=True)
class CartContext:
    lines: List[PricedLine] = field(default_factory=list)

    @property
    def total(self) -> float:
        return round(sum(l.total for l in self.lines), 2)

    @property
    def product_ids(self) -> set:
        return {l.product_id for l in self.lines}

    @property
    def categories(self) -> set:
        return {l.category for l in self.lines if l.category}


class Ineligible(Exception):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


# -----------------
# Individual checks
# -----------------
def within_schedule(is_scheduled: bool, settings: ScheduleSettings, now: datetime) -> bool:
    if not is_scheduled:
        return True
    local = as_utc(now).astimezone(STORE_TIMEZONE)
    if settings.days_of_week and WEEKDAYS[local.weekday()] not in settings.days_of_week:
        return False
    if settings.time_slots:
        current = local.strftime("%H:%M")
        for slot in settings.time_slots:
            if slot.start <= slot.end:
                if slot.start <= current <= slot.end:
                    return True
            elif current >= slot.start or current <= slot.end:
                # slot runs past midnight
                return True
        return False
    return True


def matches_segments(segments: List[str], user: Optional[Principal], order_count: Optional[int]) -> bool:
    if not segments or "all" in segments:
        return True
    if user is None:
        return False
    for segment in segments:
        if segment in ("first_order", "new_users") and order_count == 0:
            return True
        if segment == "returning_users" and order_count:
            return True
        if segment == "premium_users" and user.role == "premium":
            return True
    return False


def _check_targets(
    cart: CartContext,
    applicable_categories: List[str],
    applicable_products: List[str],
    excluded_categories: List[str],
    excluded_products: List[str],
) -> None:
    if applicable_categories or applicable_products:
        hit = (cart.categories & set(applicable_categories)) or (cart.product_ids & set(applicable_products))
        if not hit:
            raise Ineligible(NOT_APPLICABLE, "Not applicable for items in your cart")
    if (cart.categories & set(excluded_categories)) or (cart.product_ids & set(excluded_products)):
        raise Ineligible(EXCLUDED_ITEMS, "Cannot be applied to some items in your cart")


def percent_discount(total: float, percentage: float, cap: Optional[float]) -> float:
    amount = total * percentage / 100
    if cap:
        amount = min(amount, cap)
    return round(amount, 2)


def coupon_discount(coupon: Coupon, total: float) -> float:
    if coupon.type == "flat":
        amount = float(coupon.discount_amount or 0)
        if amount > total:
            raise Ineligible(INVALID_DISCOUNT, "Discount exceeds the amount payable")
    else:
        amount = percent_discount(total, coupon.discount_percentage or 0, coupon.max_discount_amount)
    if amount <= 0:
        raise Ineligible(INVALID_DISCOUNT, "Invalid discount calculation")
    return round(amount, 2)


# -----------------
# Evaluation
# -----------------
def _coupon_checks(coupon: Coupon, cart: CartContext, user: Optional[Principal], now: datetime, order_count: Optional[int]) -> float:
    if not coupon.is_active:
        raise Ineligible(INACTIVE, "Coupon is inactive")
    if as_utc(coupon.expiry_date) < now:
        raise Ineligible(EXPIRED, "Coupon has expired")
    if not within_schedule(coupon.is_scheduled, coupon.schedule_settings, now):
        raise Ineligible(OUTSIDE_SCHEDULE, "Coupon is not available at this time")
    if coupon.is_user_specific and (user is None or user.id != coupon.target_user_id):
        raise Ineligible(NOT_FOR_USER, "This coupon is not for you")
    if not matches_segments(coupon.target_user_segments, user, order_count):
        raise Ineligible(SEGMENT_MISMATCH, "This coupon is not available for your account")
    if coupon.single_use_per_user and user is not None and any(u.user_id == user.id for u in coupon.used_by):
        raise Ineligible(ALREADY_USED, "You have already used this coupon")
    if coupon.usage_limit > 0 and coupon.usage_count >= coupon.usage_limit:
        raise Ineligible(USAGE_LIMIT_REACHED, "Coupon usage limit reached")
    if cart.total < coupon.min_cart_value:
        raise Ineligible(BELOW_MIN_CART_VALUE, f"Minimum cart value of ₹{coupon.min_cart_value:g} required")
    _check_targets(
        cart,
        coupon.applicable_categories,
        coupon.applicable_products,
        coupon.excluded_categories,
        coupon.excluded_products,
    )
    return coupon_discount(coupon, cart.total)


def evaluate_coupon(
    coupon: Optional[Coupon],
    cart: CartContext,
    user: Optional[Principal] = None,
    now: Optional[datetime] = None,
    order_count: Optional[int] = None,
) -> Evaluation:
    if coupon is None:
        return Evaluation(eligible=False, reason=NOT_FOUND, message="Invalid or inactive coupon")
    now = as_utc(now or utcnow())
    try:
        amount = _coupon_checks(coupon, cart, user, now, order_count)
    except Ineligible as exc:
        return Evaluation(eligible=False, reason=exc.reason, message=exc.message, code=coupon.code, name=coupon.name, priority=coupon.priority)
    return Evaluation(eligible=True, discount_amount=amount, code=coupon.code, name=coupon.name, priority=coupon.priority)


def _offer_checks(offer: Offer, cart: CartContext, user: Optional[Principal], now: datetime, order_count: Optional[int]) -> float:
    if not offer.is_active:
        raise Ineligible(INACTIVE, "Offer is inactive")
    if as_utc(offer.end_date) < now:
        raise Ineligible(EXPIRED, "Offer has ended")
    if as_utc(offer.start_date) > now:
        raise Ineligible(NOT_STARTED, "Offer has not started yet")
    if not within_schedule(offer.is_scheduled, offer.schedule_settings, now):
        raise Ineligible(OUTSIDE_SCHEDULE, "Offer is not available at this time")
    if not matches_segments(offer.target_user_segments, user, order_count):
        raise Ineligible(SEGMENT_MISMATCH, "This offer is not available for your account")
    if cart.total < offer.min_cart_value:
        raise Ineligible(BELOW_MIN_CART_VALUE, f"Minimum cart value of ₹{offer.min_cart_value:g} required")
    _check_targets(cart, offer.category_ids, [], [], [])
    amount = percent_discount(cart.total, offer.discount_percentage, offer.max_discount_amount)
    if amount <= 0:
        raise Ineligible(INVALID_DISCOUNT, "Invalid discount calculation")
    return amount


def evaluate_offer(
    offer: Offer,
    cart: CartContext,
    user: Optional[Principal] = None,
    now: Optional[datetime] = None,
    order_count: Optional[int] = None,
) -> Evaluation:
    now = as_utc(now or utcnow())
    try:
        amount = _offer_checks(offer, cart, user, now, order_count)
    except Ineligible as exc:
        return Evaluation(eligible=False, reason=exc.reason, message=exc.message, offer_id=offer.id, name=offer.name, priority=offer.priority)
    return Evaluation(eligible=True, discount_amount=amount, offer_id=offer.id, name=offer.name, priority=offer.priority)


def rank_offers(evaluations: List[Evaluation]) -> OfferRanking:
    ranked = sorted(
        (e for e in evaluations if e.eligible),
        key=lambda e: (e.priority, e.discount_amount),
        reverse=True,
    )
    return OfferRanking(best=ranked[0] if ranked else None, offers=ranked)


# -----------------
# Legacy coupon documents
# -----------------
def upgrade_coupon_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map older coupon shapes onto the current model.

    Older documents carry discount_type percent|fixed with a single value,
    max_uses / expires_at / min_order_amount, and the firstOrderOnly /
    giftToUser flags.
    """
    if "type" in doc:
        return doc
    d = dict(doc)
    kind = d.pop("discount_type", None)
    value = d.pop("value", None)
    if kind in ("fixed", "flat"):
        d["type"] = "flat"
        d["discount_amount"] = value
    elif kind == "percent":
        d["type"] = "percent"
        d["discount_percentage"] = value
        d.setdefault("max_discount_amount", d.pop("max_discount", None))
    if "max_uses" in d:
        d["usage_limit"] = d.pop("max_uses") or 0
    if "uses" in d:
        d["usage_count"] = d.pop("uses") or 0
    if "expires_at" in d:
        d["expiry_date"] = d.pop("expires_at")
    if d.get("expiry_date") is None:
        d["expiry_date"] = FAR_FUTURE
    if "min_order_amount" in d:
        d["min_cart_value"] = d.pop("min_order_amount") or 0
    if d.pop("firstOrderOnly", False) or d.pop("first_order_only", False):
        d["target_user_segments"] = ["first_order"]
    gift = d.pop("giftToUser", None) or d.pop("gift_to_user", None)
    if gift:
        d["is_user_specific"] = True
        d["target_user_id"] = str(gift)
    d.setdefault("name", d.get("code", ""))
    return d


# -----------------
# Service
# -----------------
class PromotionEvaluator:
    def __init__(self, store: "PromotionStore", orders: "OrderStore"):
        self.store = store
        self.orders = orders

    def _order_count(self, segments: List[str], user: Optional[Principal]) -> Optional[int]:
        if not segments or user is None:
            return None
        return self.orders.count_orders_for_user(user.id)

    def evaluate_code(self, code: str, cart: CartContext, user: Optional[Principal] = None, now: Optional[datetime] = None) -> Evaluation:
        coupon = self.store.find_coupon_by_code(code)
        count = self._order_count(coupon.target_user_segments, user) if coupon else None
        return evaluate_coupon(coupon, cart, user, now, count)

    def require_coupon(self, code: str, cart: CartContext, user: Optional[Principal] = None, now: Optional[datetime] = None):
        """Return (coupon, evaluation) or raise when the code cannot be used."""
        coupon = self.store.find_coupon_by_code(code)
        if coupon is None:
            raise NotFoundError("Invalid or inactive coupon", reason=NOT_FOUND)
        result = evaluate_coupon(coupon, cart, user, now, self._order_count(coupon.target_user_segments, user))
        if not result.eligible:
            logger.warning("Coupon %s rejected: %s", coupon.code, result.reason)
            raise IneligibleError(result.message, reason=result.reason)
        return coupon, result

    def apply_coupon(self, coupon: Coupon, user: Optional[Principal], order_id: str, order_value: float, discount: float) -> bool:
        """Record one redemption for order_id. Returns False if it was already recorded."""
        usage = UsageRecord(
            user_id=user.id if user else None,
            order_id=order_id,
            order_value=order_value,
            discount_applied=discount,
        )
        if self.store.record_coupon_usage(coupon.id, usage, coupon.single_use_per_user):
            logger.info("Coupon %s redeemed for order %s (-%.2f)", coupon.code, order_id, discount)
            return True

        current = self.store.find_coupon(coupon.id)
        if current is None:
            raise NotFoundError("Coupon not found", reason=NOT_FOUND)
        if any(u.order_id == order_id for u in current.used_by):
            return False
        if current.usage_limit > 0 and current.usage_count >= current.usage_limit:
            raise ConflictError("Coupon usage limit reached", reason=USAGE_LIMIT_REACHED)
        raise ConflictError("You have already used this coupon", reason=ALREADY_USED)

    def best_offer(self, cart: CartContext, user: Optional[Principal] = None, now: Optional[datetime] = None) -> OfferRanking:
        now = as_utc(now or utcnow())
        evaluations = []
        for offer in self.store.list_active_offers(now):
            count = self._order_count(offer.target_user_segments, user)
            evaluations.append(evaluate_offer(offer, cart, user, now, count))
        return rank_offers(evaluations)

    def apply_offer(self, offer_id: str, order_id: str, discount: float) -> bool:
        recorded = self.store.record_offer_usage(offer_id, order_id, discount)
        if recorded:
            logger.info("Offer %s applied to order %s (-%.2f)", offer_id, order_id, discount)
        return recorded
