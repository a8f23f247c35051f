"""
Order emails. Sending is fire-and-forget: failures are logged, never raised.
"""
import html
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Callable, Dict, Optional, Tuple

from schemas import Order, OrderStatus

logger = logging.getLogger(__name__)

STORE_NAME = os.getenv("STORE_NAME", "Kokoru")


def _items_summary(order: Order) -> str:
    return "<br/>".join(f"{html.escape(it.name)} x{it.quantity}" for it in order.items[:8])


def _order_placed_admin(data: Dict[str, Any]) -> Tuple[str, str]:
    order: Order = data["order"]
    body = (
        "<h3>New Order Received</h3>"
        f"<p><strong>Order ID:</strong> {order.id}</p>"
        f"<p><strong>Amount:</strong> ₹{order.total_after_discount:g}</p>"
        f"<p><strong>Customer:</strong> {html.escape(order.customer_name or 'Customer')}</p>"
        f"<p><a href=\"{data['admin_url']}\">View order in admin dashboard</a></p>"
    )
    return f"New Order Received - {order.id}", body


def _order_placed_customer(data: Dict[str, Any]) -> Tuple[str, str]:
    order: Order = data["order"]
    body = (
        f"<p>Hi {html.escape(order.customer_name or 'Customer')},</p>"
        f"<p>Thanks for shopping with us. Your order <strong>{order.id}</strong> is confirmed.</p>"
        f"<h4>Order Items</h4><div>{_items_summary(order)}</div>"
        f"<p>Total paid: ₹{order.total_after_discount:g}</p>"
    )
    return f"Your {STORE_NAME} order {order.id} is placed", body


def _status_changed_admin(data: Dict[str, Any]) -> Tuple[str, str]:
    order: Order = data["order"]
    body = (
        "<h3>Order Status Updated</h3>"
        f"<p><strong>Order ID:</strong> {order.id}</p>"
        f"<p><strong>Previous:</strong> {data['previous']}</p>"
        f"<p><strong>New Status:</strong> {order.status.value}</p>"
        f"<p><a href=\"{data['admin_url']}\">View order in admin dashboard</a></p>"
    )
    return f"Order {order.id} status updated to {order.status.value}", body


STATUS_LINES = {
    OrderStatus.CONFIRMED: ("is confirmed", "has been confirmed. We'll start processing it and notify you when it ships."),
    OrderStatus.PACKED: ("is being packed", "is being packed. We'll notify you when it ships."),
    OrderStatus.PROCESSING: ("is being packed", "is being packed. We'll notify you when it ships."),
    OrderStatus.SHIPPED: ("has been shipped", "has been shipped. Track it from your orders page."),
    OrderStatus.DELIVERED: ("was delivered", "has been delivered. We hope you enjoy it!"),
    OrderStatus.CANCELLED: ("was cancelled", "has been cancelled. If this was unexpected, please contact support."),
    OrderStatus.REFUNDED: ("was refunded", "has been refunded. If this was unexpected, please contact support."),
}


def _status_changed_customer(data: Dict[str, Any]) -> Tuple[str, str]:
    order: Order = data["order"]
    headline, sentence = STATUS_LINES.get(order.status, (f"is now {order.status.value}", f"is now {order.status.value}."))
    body = (
        f"<p>Hi {html.escape(order.customer_name or 'Customer')},</p>"
        f"<p>Your order <strong>{order.id}</strong> {sentence}</p>"
        f"<h4>Order Items</h4><div>{_items_summary(order)}</div>"
        f"<p>View details on <a href=\"{data['orders_url']}\">My Orders</a>.</p>"
    )
    return f"Your {STORE_NAME} order {order.id} {headline}", body


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "order_placed_admin": _order_placed_admin,
    "order_placed_customer": _order_placed_customer,
    "status_changed_admin": _status_changed_admin,
    "status_changed_customer": _status_changed_customer,
}


class Notifier:
    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        secure: bool = False,
        sender: Optional[str] = None,
        admin_email: Optional[str] = None,
        app_url: str = "http://localhost:3000",
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.secure = secure
        self.sender = sender or user
        self.admin_email = admin_email
        self.app_url = app_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "Notifier":
        return cls(
            host=os.getenv("SMTP_HOST"),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=os.getenv("SMTP_USER"),
            password=os.getenv("SMTP_PASS"),
            secure=os.getenv("SMTP_SECURE", "false").lower() == "true",
            sender=os.getenv("MAIL_FROM"),
            admin_email=os.getenv("ADMIN_NOTIFICATION_EMAIL"),
            app_url=os.getenv("APP_URL", "http://localhost:3000"),
        )

    def send_mail(self, to: str, subject: str, html: str) -> None:
        if not self.host:
            logger.info("SMTP not configured, skipping mail to %s: %s", to, subject)
            return
        msg = EmailMessage()
        msg["From"] = self.sender or ""
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(html, subtype="html")
        smtp_cls = smtplib.SMTP_SSL if self.secure else smtplib.SMTP
        with smtp_cls(self.host, self.port, timeout=10) as smtp:
            if not self.secure and self.user:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password or "")
            smtp.send_message(msg)

    def notify(self, recipient: Optional[str], template: str, data: Dict[str, Any]) -> bool:
        if not recipient:
            return False
        try:
            subject, html = TEMPLATES[template](data)
            self.send_mail(recipient, subject, html)
        except Exception:
            logger.exception("Failed to send %s notification to %s", template, recipient)
            return False
        return True

    def _data(self, order: Order, **extra) -> Dict[str, Any]:
        return {
            "order": order,
            "admin_url": f"{self.app_url}/admin/orders/{order.id}",
            "orders_url": f"{self.app_url}/my-orders",
            **extra,
        }

    def order_placed(self, order: Order) -> None:
        data = self._data(order)
        self.notify(self.admin_email, "order_placed_admin", data)
        self.notify(order.user_email, "order_placed_customer", data)

    def status_changed(self, order: Order, previous: OrderStatus) -> None:
        data = self._data(order, previous=previous.value)
        self.notify(self.admin_email, "status_changed_admin", data)
        self.notify(order.user_email, "status_changed_customer", data)
