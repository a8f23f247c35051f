import smtplib

from notifications import TEMPLATES, Notifier
from schemas import Order, OrderItem, OrderStatus


def sample_order(status=OrderStatus.SHIPPED):
    return Order(
        id="65f000000000000000000001",
        items=[OrderItem(product_id="p1", name="Tee", price=500, quantity=2)],
        user_email="alice@example.com",
        customer_name="Alice",
        amount=1000,
        total_after_discount=900,
        status=status,
    )


class CapturingNotifier(Notifier):
    def __init__(self, fail=False):
        super().__init__(host="smtp.example.com", admin_email="admin@example.com")
        self.fail = fail
        self.sent = []

    def send_mail(self, to, subject, html):
        if self.fail:
            raise smtplib.SMTPException("connection refused")
        self.sent.append((to, subject))


def test_status_change_mails_admin_and_customer():
    notifier = CapturingNotifier()
    notifier.status_changed(sample_order(), OrderStatus.PAID)

    assert notifier.sent == [
        ("admin@example.com", "Order 65f000000000000000000001 status updated to shipped"),
        ("alice@example.com", "Your Kokoru order 65f000000000000000000001 has been shipped"),
    ]


def test_send_failures_are_swallowed():
    notifier = CapturingNotifier(fail=True)
    assert notifier.notify("alice@example.com", "order_placed_customer", {"order": sample_order()}) is False


def test_missing_recipient_or_host_skips():
    assert Notifier().notify(None, "order_placed_admin", {}) is False
    assert Notifier().notify("alice@example.com", "order_placed_customer", {"order": sample_order()}) is True


def test_order_placed_templates_render_totals():
    subject, html = TEMPLATES["order_placed_customer"]({"order": sample_order(OrderStatus.PAID)})
    assert "is placed" in subject
    assert "Tee x2" in html
    assert "900" in html


def test_customer_supplied_text_is_escaped():
    order = sample_order().model_copy(update={
        "customer_name": "<b>Al</b>",
        "items": [OrderItem(product_id="p1", name="Tee & <i>Co</i>", price=500, quantity=1)],
    })
    _, html = TEMPLATES["status_changed_customer"]({"order": order, "orders_url": "https://shop.example/orders"})

    assert "<b>Al</b>" not in html
    assert "Hi &lt;b&gt;Al&lt;/b&gt;," in html
    assert "Tee &amp; &lt;i&gt;Co&lt;/i&gt; x1" in html
