import logging

import pytest

from conftest import size_stock
from errors import ConflictError, DependencyError, InsufficientStock, InvalidTransition, NotFoundError, ValidationError
from inventory import InventoryEngine
from lifecycle import OrderLifecycle, can_transition, parse_status
from memory_store import InMemoryCatalogStore, InMemoryOrderStore
from schemas import Order, OrderItem, OrderStatus


def place_order(orders, tee, qty=2, size="M"):
    order = Order(
        items=[OrderItem(product_id=tee.id, name=tee.name, price=500, quantity=qty, color_name="Red", size_label=size)],
        payment_id=f"pay_{size}_{qty}",
        amount=500 * qty,
        total_after_discount=500 * qty,
    )
    return orders.create_order(order)


def test_shipping_allocates_stock(catalog, orders, lifecycle, tee):
    order = place_order(orders, tee)

    result = lifecycle.transition(order.id, "shipped")

    assert result.allocated
    assert result.previous == OrderStatus.PAID
    assert result.order.status == OrderStatus.SHIPPED
    assert result.order.stock_allocated
    assert size_stock(catalog, tee.id) == 3
    assert catalog.find_product(tee.id).sold == 2


def test_cancel_after_shipping_releases_once(catalog, orders, lifecycle, tee):
    order = place_order(orders, tee)
    lifecycle.transition(order.id, "shipped")

    first = lifecycle.transition(order.id, "cancelled")
    second = lifecycle.transition(order.id, "cancelled")

    assert first.released and not first.order.stock_allocated
    assert not second.changed
    assert size_stock(catalog, tee.id) == 5
    assert catalog.find_product(tee.id).sold == 0


def test_cancel_before_shipping_does_not_touch_stock(catalog, orders, lifecycle, tee):
    order = place_order(orders, tee)
    result = lifecycle.transition(order.id, "canceled")

    assert result.order.status == OrderStatus.CANCELLED
    assert not result.released
    assert size_stock(catalog, tee.id) == 5


def test_refund_releases_shipped_stock(catalog, orders, lifecycle, tee):
    order = place_order(orders, tee)
    lifecycle.transition(order.id, "confirmed")
    lifecycle.transition(order.id, "shipped")
    result = lifecycle.transition(order.id, "refunded")

    assert result.released
    assert size_stock(catalog, tee.id) == 5


def test_terminal_states_reject_moves(orders, lifecycle, tee):
    order = place_order(orders, tee)
    lifecycle.transition(order.id, "shipped")
    lifecycle.transition(order.id, "delivered")

    with pytest.raises(InvalidTransition):
        lifecycle.transition(order.id, "shipped")


def test_unknown_status_and_missing_order(orders, lifecycle, tee):
    order = place_order(orders, tee)
    with pytest.raises(ValidationError) as exc:
        lifecycle.transition(order.id, "lost")
    assert exc.value.reason == "unknown_status"

    with pytest.raises(NotFoundError):
        lifecycle.transition("000000000000000000000000", "shipped")


def test_shipping_without_stock_leaves_order_unchanged(catalog, orders, lifecycle, tee):
    first = place_order(orders, tee, qty=4)
    second = place_order(orders, tee, qty=3)
    lifecycle.transition(first.id, "shipped")

    with pytest.raises(InsufficientStock):
        lifecycle.transition(second.id, "shipped")

    unchanged = orders.find_order(second.id)
    assert unchanged.status == OrderStatus.PAID
    assert not unchanged.stock_allocated
    assert size_stock(catalog, tee.id) == 1


class StaleOrderStore(InMemoryOrderStore):
    """Every conditional write loses, as if another admin moved the order first."""

    def update_order(self, order_id, expected, changes):
        return None


def test_lost_ship_update_returns_stock(catalog, inventory, tee):
    orders = StaleOrderStore()
    order = place_order(orders, tee)

    with pytest.raises(ConflictError):
        OrderLifecycle(orders, inventory).transition(order.id, "shipped")

    assert size_stock(catalog, tee.id) == 5
    assert catalog.find_product(tee.id).sold == 0


class FailingWriteOrderStore(InMemoryOrderStore):
    """Conditional writes fail outright, as if the database went away mid-request."""

    def update_order(self, order_id, expected, changes):
        raise DependencyError("Database is unavailable")


def test_failed_ship_write_returns_stock(catalog, inventory, tee):
    orders = FailingWriteOrderStore()
    order = place_order(orders, tee)

    with pytest.raises(DependencyError):
        OrderLifecycle(orders, inventory).transition(order.id, "shipped")

    assert size_stock(catalog, tee.id) == 5
    assert catalog.find_product(tee.id).sold == 0
    unchanged = orders.find_order(order.id)
    assert unchanged.status == OrderStatus.PAID
    assert not unchanged.stock_allocated


class BrokenRestockCatalog(InMemoryCatalogStore):
    """Stock increments fail for one product."""

    def __init__(self):
        super().__init__()
        self.broken = None

    def adjust_stock(self, product_id, color_name, size_label, delta, sold_delta=0):
        if product_id == self.broken and delta > 0:
            raise DependencyError("Database is unavailable")
        return super().adjust_stock(product_id, color_name, size_label, delta, sold_delta)


def test_cancel_returns_what_it_can_and_logs_the_rest(caplog, catalog, orders, tee, mug):
    broken = BrokenRestockCatalog()
    tee = broken.create_product(catalog.find_product(tee.id))
    mug = broken.create_product(catalog.find_product(mug.id))
    order = orders.create_order(Order(
        items=[
            OrderItem(product_id=tee.id, name="Tee", price=500, quantity=2, color_name="Red", size_label="M"),
            OrderItem(product_id=mug.id, name="Mug", price=200, quantity=1),
        ],
        payment_id="pay_mixed",
        amount=1200,
        total_after_discount=1200,
    ))
    lifecycle = OrderLifecycle(orders, InventoryEngine(broken))
    lifecycle.transition(order.id, "shipped")
    broken.broken = mug.id

    with caplog.at_level(logging.ERROR, logger="inventory"):
        result = lifecycle.transition(order.id, "cancelled")

    assert result.order.status == OrderStatus.CANCELLED
    assert not result.order.stock_allocated
    assert size_stock(broken, tee.id) == 5
    assert broken.find_product(mug.id).stock == 2
    assert any("1 unit(s) of product " + mug.id in r.getMessage() for r in caplog.records)


def test_transition_table():
    assert can_transition(OrderStatus.PAID, OrderStatus.SHIPPED)
    assert can_transition(OrderStatus.PROCESSING, OrderStatus.PACKED)
    assert not can_transition(OrderStatus.DELIVERED, OrderStatus.REFUNDED)
    assert not can_transition(OrderStatus.SHIPPED, OrderStatus.PAID)
    assert parse_status(" Shipped ") == OrderStatus.SHIPPED
