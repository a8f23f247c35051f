"""
Checkout: turns a paid cart into an order.

Stock is only checked here, never decremented; the order is created with
stock_allocated=False and inventory is committed when the order ships.
Coupon and offer usage is recorded only once the order is saved, keyed on
its id.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from errors import ConflictError, NotFoundError, ValidationError
from inventory import Allocation, InventoryEngine, StockLine
from payments import verify_payment_signature
from promotions import CartContext, PricedLine, PromotionEvaluator
from schemas import (
    Address,
    CheckoutRequest,
    CouponSnapshot,
    OfferSnapshot,
    Order,
    OrderItem,
    OrderStatus,
    PaymentProof,
    Principal,
)

if TYPE_CHECKING:
    from repositories import OrderStore

logger = logging.getLogger(__name__)

PaymentVerifier = Callable[[PaymentProof], bool]


def verify_with_provider_secret(proof: PaymentProof) -> bool:
    return verify_payment_signature(proof.provider_order_id, proof.payment_id, proof.signature)


def validate_address(address: Address) -> None:
    missing = [
        name for name, value in (
            ("address", address.address),
            ("pincode", address.pincode),
            ("mobile", address.mobile),
        )
        if not value or not str(value).strip()
    ]
    if missing:
        raise ValidationError(f"Incomplete address: missing {', '.join(missing)}", reason="incomplete_address")
    if not re.fullmatch(r"\d{6}", address.pincode):
        raise ValidationError("Pincode must be 6 digits", reason="incomplete_address")
    if not re.fullmatch(r"\d{10}", address.mobile):
        raise ValidationError("Mobile number must be 10 digits", reason="incomplete_address")


@dataclass(frozen=True)
class Quote:
    allocations: List[Allocation]
    cart: CartContext

    @property
    def items(self) -> List[OrderItem]:
        return [
            OrderItem(
                product_id=a.product_id,
                name=a.product_name,
                price=a.unit_price,
                quantity=a.quantity,
                color_name=a.color_name,
                size_label=a.size_label,
            )
            for a in self.allocations
        ]


class CheckoutService:
    def __init__(
        self,
        inventory: InventoryEngine,
        promotions: PromotionEvaluator,
        orders: "OrderStore",
        verify_payment: PaymentVerifier = verify_with_provider_secret,
    ):
        self.inventory = inventory
        self.promotions = promotions
        self.orders = orders
        self.verify_payment = verify_payment

    def quote(self, lines: Sequence[StockLine]) -> Quote:
        """Price a cart from the catalog after an availability check."""
        allocations = self.inventory.check_availability(lines)
        cart = CartContext([PricedLine(a.product_id, a.category, a.unit_price, a.quantity) for a in allocations])
        return Quote(allocations, cart)

    def checkout(self, req: CheckoutRequest, user: Optional[Principal] = None, now: Optional[datetime] = None) -> Tuple[Order, bool]:
        """
        Returns (order, created). A payment already turned into an order
        returns that order, finishing any promotion usage it still lacks.
        """
        proof = req.payment
        if not self.verify_payment(proof):
            raise ValidationError("Invalid payment signature", reason="invalid_signature")

        existing = self.orders.find_order_by_payment(proof.payment_id)
        if existing is not None:
            logger.info("Payment %s already has order %s", proof.payment_id, existing.id)
            return self._redeem(existing, user), False

        validate_address(req.address)
        quote = self.quote(req.cart)
        amount = quote.cart.total

        coupon_snapshot = offer_snapshot = None
        discount = 0.0
        if req.coupon_code:
            coupon, result = self.promotions.require_coupon(req.coupon_code, quote.cart, user, now)
            discount = result.discount_amount
            coupon_snapshot = CouponSnapshot(
                coupon_id=coupon.id,
                code=coupon.code,
                type=coupon.type,
                value=coupon.discount_amount if coupon.type == "flat" else coupon.discount_percentage,
                discount_amount=discount,
            )
        elif req.apply_best_offer:
            best = self.promotions.best_offer(quote.cart, user, now).best
            if best is not None:
                discount = best.discount_amount
                offer_snapshot = OfferSnapshot(offer_id=best.offer_id, name=best.name or "", discount_amount=discount)

        order = Order(
            items=quote.items,
            user_id=user.id if user else None,
            user_email=req.user_email or (user.email if user else None),
            customer_name=req.customer_name or "Customer",
            contact=req.contact or req.address.mobile,
            address=req.address,
            payment_id=proof.payment_id,
            amount=amount,
            coupon=coupon_snapshot,
            offer=offer_snapshot,
            discount_amount=discount,
            total_after_discount=round(amount - discount, 2),
            status=OrderStatus.PAID,
            stock_allocated=False,
        )
        try:
            saved = self.orders.create_order(order)
        except ConflictError:
            # a concurrent request for the same payment won and redeems for it
            existing = self.orders.find_order_by_payment(proof.payment_id)
            if existing is None:
                raise
            return existing, False

        logger.info("Order %s created for payment %s: %.2f - %.2f", saved.id, proof.payment_id, amount, discount)
        return self._redeem(saved, user), True

    def _redeem(self, order: Order, user: Optional[Principal]) -> Order:
        """Record coupon/offer usage for a saved order. Repeating it for the same order is a no-op."""
        if order.coupon is not None:
            coupon = self.promotions.store.find_coupon(order.coupon.coupon_id)
            try:
                if coupon is None:
                    raise NotFoundError("Coupon no longer exists")
                self.promotions.apply_coupon(coupon, user, order.id, order.amount, order.coupon.discount_amount)
            except (ConflictError, NotFoundError) as exc:
                return self._drop_coupon(order, exc.reason)
        if order.offer is not None:
            self.promotions.apply_offer(order.offer.offer_id, order.id, order.offer.discount_amount)
        return order

    def _drop_coupon(self, order: Order, reason: str) -> Order:
        # the coupon was used up between quote and redemption; bill the full amount
        logger.warning(
            "Coupon %s could not be redeemed for order %s (%s); repricing to %.2f",
            order.coupon.code, order.id, reason, order.amount,
        )
        updated = self.orders.update_order(
            order.id,
            {"status": order.status},
            {"coupon": None, "discount_amount": 0, "total_after_discount": order.amount},
        )
        if updated is None:
            logger.error("Order %s changed before coupon %s could be removed", order.id, order.coupon.code)
            return order
        return updated
