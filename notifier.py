"""
Order notification emails.

Delivery is best effort: a failure is logged and never reaches the caller.
When no SMTP host is configured messages are only logged.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Iterable, NamedTuple, Optional

from config import settings

logger = logging.getLogger(__name__)


class OrderNotification(NamedTuple):
    order_id: int
    total: str
    items: list
    status: str
    payment_method: str
    message: str
    shipping: dict


def render_body(n: OrderNotification) -> str:
    lines = [n.message, "", f"Order #: {n.order_id}", f"Status: {n.status}", f"Payment: {n.payment_method.upper()}", ""]
    for item in n.items:
        lines.append(f"  {item['quantity']} x {item['name']} @ {item['price']}")
    lines.append(f"Total: {n.total}")
    ship = n.shipping
    if ship.get("shipping_name"):
        lines += [
            "",
            "Ship to:",
            f"  {ship.get('shipping_name')} ({ship.get('shipping_mobile') or '-'})",
            f"  {ship.get('shipping_line1') or ''}",
        ]
        if ship.get("shipping_line2"):
            lines.append(f"  {ship['shipping_line2']}")
        lines.append(
            f"  {ship.get('shipping_city') or ''}, {ship.get('shipping_state') or ''} "
            f"{ship.get('shipping_postal_code') or ''}, {ship.get('shipping_country') or ''}"
        )
    return "\n".join(lines)


class Notifier:
    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_email: str = "orders@shop.local",
        admin_email: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_email = from_email
        self.admin_email = admin_email
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "Notifier":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            from_email=settings.from_email,
            admin_email=settings.admin_email,
        )

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls()
                smtp.ehlo()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(msg)

    def send_order_notification(self, to_email: Optional[str], notification: OrderNotification) -> bool:
        if not to_email:
            return False
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg["Subject"] = f"Order #{notification.order_id} - {notification.status}"
        msg.set_content(render_body(notification))

        if not self.host:
            logger.debug("SMTP not configured, skipping mail to %s: %s", to_email, msg["Subject"])
            return False
        try:
            self._deliver(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Email send failed for order %s to %s", notification.order_id, to_email)
            return False
        logger.info("Sent order %s notification to %s", notification.order_id, to_email)
        return True

    def notify(self, recipients: Iterable[Optional[str]], notification: OrderNotification) -> None:
        for to_email in recipients:
            self.send_order_notification(to_email, notification)
