from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Iterable

from . import config

logger = logging.getLogger(__name__)


class EmailSender:
    def __init__(
        self,
        *,
        host: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        username: str = config.SMTP_USERNAME,
        password: str = config.SMTP_PASSWORD,
        sender: str = config.SMTP_FROM,
        use_tls: bool = config.SMTP_USE_TLS,
        enabled: bool = config.EMAIL_ENABLED,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.enabled = enabled

    def send(self, to: str, subject: str, html: str) -> bool:
        """Send an HTML email. Failures are logged and reported as False, never raised."""
        if not self.enabled:
            logger.info("Email disabled, not sending '%s' to %s", subject, to)
            return False
        if not to or not to.strip():
            logger.warning("No recipient for email '%s'", subject)
            return False

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to.strip()
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable email client.")
        msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send email '%s' to %s", subject, to)
            return False
        logger.info("Sent email '%s' to %s", subject, to)
        return True


def _items_table(items: Iterable) -> str:
    rows = "".join(
        f"<tr><td>{escape(item.title)}</td>"
        f"<td>{escape(item.size or '-')}</td>"
        f"<td>{item.quantity}</td>"
        f"<td>{item.price}</td></tr>"
        for item in items
    )
    return (
        "<table><thead><tr><th>Item</th><th>Size</th><th>Qty</th><th>Price</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>"
    )


def payment_confirmation_email(order) -> tuple[str, str]:
    subject = f"Payment confirmed - order {order.id}"
    html = (
        f"<p>Hi {escape(order.customer_name)},</p>"
        f"<p>We have confirmed your payment for order <strong>{escape(order.id)}</strong>. "
        "Your items are being prepared for shipping.</p>"
        f"{_items_table(order.items)}"
        f"<p>Total: {order.total}</p>"
    )
    return subject, html


def order_shipped_email(order) -> tuple[str, str]:
    subject = f"Your order {order.id} has shipped"
    html = (
        f"<p>Hi {escape(order.customer_name)},</p>"
        f"<p>Good news: order <strong>{escape(order.id)}</strong> is on its way.</p>"
    )
    return subject, html


def order_completion_email(order) -> tuple[str, str]:
    subject = f"Order {order.id} complete"
    html = (
        f"<p>Hi {escape(order.customer_name)},</p>"
        f"<p>Order <strong>{escape(order.id)}</strong> has been delivered. Thank you for shopping with us.</p>"
        f"{_items_table(order.items)}"
        f"<p>Total: {order.total}</p>"
    )
    return subject, html
