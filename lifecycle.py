"""
Order status state machine.

Stock is committed when an order enters `shipped` and returned when an order
holding stock enters `cancelled` or `refunded`. The order's stock_allocated
flag gates both, and every order write is conditional on the status and flag
read beforehand, so a transition applies at most once.
"""
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet

from errors import ConflictError, InvalidTransition, NotFoundError, ShopError, ValidationError
from schemas import Order, OrderStatus

if TYPE_CHECKING:
    from inventory import InventoryEngine
    from repositories import OrderStore

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PAID: frozenset({S.CONFIRMED, S.PACKED, S.PROCESSING, S.SHIPPED, S.CANCELLED, S.REFUNDED}),
    S.CONFIRMED: frozenset({S.PACKED, S.PROCESSING, S.SHIPPED, S.CANCELLED, S.REFUNDED}),
    S.PACKED: frozenset({S.PROCESSING, S.SHIPPED, S.CANCELLED, S.REFUNDED}),
    S.PROCESSING: frozenset({S.PACKED, S.SHIPPED, S.CANCELLED, S.REFUNDED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}
TERMINAL = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
RELEASING = frozenset({S.CANCELLED, S.REFUNDED})
ALIASES = {"canceled": S.CANCELLED}


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    key = str(value or "").strip().lower()
    if key in ALIASES:
        return ALIASES[key]
    try:
        return OrderStatus(key)
    except ValueError:
        raise ValidationError(f"Unknown order status '{value}'", reason="unknown_status")


def can_transition(src: OrderStatus, dst: OrderStatus) -> bool:
    return dst in TRANSITIONS[src]


@dataclass
class TransitionResult:
    order: Order
    previous: OrderStatus
    changed: bool = True
    allocated: bool = False
    released: bool = False


class OrderLifecycle:
    def __init__(self, orders: "OrderStore", inventory: "InventoryEngine"):
        self.orders = orders
        self.inventory = inventory

    def transition(self, order_id: str, status) -> TransitionResult:
        target = parse_status(status)
        order = self.orders.find_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")

        current = order.status
        if target == current:
            return TransitionResult(order, current, changed=False)
        if not can_transition(current, target):
            raise InvalidTransition(f"Cannot move order from {current.value} to {target.value}")

        expected = {"status": current, "stock_allocated": order.stock_allocated}
        if target == S.SHIPPED and not order.stock_allocated:
            result = self._ship(order, expected)
        elif target in RELEASING and order.stock_allocated:
            result = self._release(order, target, expected)
        else:
            updated = self.orders.update_order(order.id, expected, {"status": target})
            if updated is None:
                raise ConflictError("Order changed while updating, please retry")
            result = TransitionResult(updated, current)

        logger.info("Order %s status changed: %s -> %s", order.id, current.value, target.value)
        return result

    def _ship(self, order: Order, expected: dict) -> TransitionResult:
        # raises on shortage; the order is untouched in that case
        self.inventory.reserve(order.items)
        try:
            updated = self.orders.update_order(
                order.id, expected, {"status": S.SHIPPED, "stock_allocated": True}
            )
        except ShopError:
            self.inventory.release(order.items)
            raise
        if updated is None:
            self.inventory.release(order.items)
            raise ConflictError("Order changed while shipping, stock returned; please retry")
        return TransitionResult(updated, order.status, allocated=True)

    def _release(self, order: Order, target: OrderStatus, expected: dict) -> TransitionResult:
        # claim the release first so two concurrent cancels cannot both restock
        updated = self.orders.update_order(
            order.id, expected, {"status": target, "stock_allocated": False}
        )
        if updated is None:
            raise ConflictError("Order changed while cancelling, please retry")
        self.inventory.release(updated.items)
        return TransitionResult(updated, order.status, released=True)
