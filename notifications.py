"""
Order status e-mails.

Channel adapters follow a small port: send() returns a dict with
message_id, status ("sent" or "failed") and optionally error. The SMTP
adapter talks to a real mail server and is the default; EMAIL_BACKEND=disabled
swaps in an adapter that drops every message and reports it as not
delivered. Tests install their own adapter with set_email_channel().

NotificationDispatcher.notify_status_change() runs after an order status
write has committed. It is best effort: one attempt, no retry, and every
failure is logged and dropped so the caller never sees it.
"""
import smtplib
import ssl
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Dict, Optional

import structlog
from pymongo.database import Database

from config import get_settings
from database import create_document
from errors import NotificationFailure
from schemas import Notification, OrderStatus

logger = structlog.get_logger(__name__)

BRAND = "AgriConnect"

STATUS_MESSAGES = {
    OrderStatus.CONFIRMED.value: "Your order has been confirmed and is being processed.",
    OrderStatus.READY_FOR_PICKUP.value: "Your order is ready for pickup! Please collect it at your convenience.",
    OrderStatus.COMPLETED.value: "Thank you for collecting your order. We hope you enjoy your fresh produce!",
}


class EmailPort(ABC):
    """Abstract interface for email dispatch adapters."""

    @abstractmethod
    def send(self, to: str, subject: str, body: str, reply_to: Optional[str] = None) -> dict:
        """Send an HTML email message.

        Returns:
            dict with keys: message_id, status ("sent" or "failed"), error (optional)
        """
        ...


class SmtpEmailAdapter(EmailPort):
    def __init__(self, host: str, port: int, user: Optional[str], password: Optional[str], timeout: float = 10.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str, reply_to: Optional[str] = None) -> dict:
        msg = EmailMessage()
        msg["From"] = formataddr((BRAND, self.user or ""))
        msg["To"] = to
        msg["Subject"] = subject
        if reply_to:
            msg["Reply-To"] = reply_to
        message_id = make_msgid()
        msg["Message-ID"] = message_id
        msg.set_content("This message requires an HTML capable mail reader.")
        msg.add_alternative(body, subtype="html")

        try:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=ssl.create_default_context()) as server:
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            return {"message_id": None, "status": "failed", "error": str(e)}

        return {"message_id": message_id, "status": "sent"}


class DisabledEmailAdapter(EmailPort):
    """Adapter for deployments without a mail server. Nothing is sent or kept."""

    def send(self, to: str, subject: str, body: str, reply_to: Optional[str] = None) -> dict:
        logger.info("Email delivery disabled, dropping message", to=to, subject=subject)
        return {"message_id": None, "status": "failed", "error": "Email delivery is disabled"}


_channel: Optional[EmailPort] = None


def get_email_channel() -> EmailPort:
    """Return the configured email adapter (process-wide singleton)."""
    global _channel
    if _channel is None:
        settings = get_settings()
        if settings.email_backend == "smtp":
            _channel = SmtpEmailAdapter(
                host=settings.email_host,
                port=settings.email_port,
                user=settings.email_user,
                password=settings.email_pass,
            )
        elif settings.email_backend == "disabled":
            _channel = DisabledEmailAdapter()
        else:
            raise ValueError(f"Unknown email backend: {settings.email_backend}")
    return _channel


def set_email_channel(channel: EmailPort) -> None:
    """Install `channel` as the process-wide adapter."""
    global _channel
    _channel = channel


def reset_channels():
    global _channel
    _channel = None


def short_order_id(order_id: str) -> str:
    return str(order_id)[-8:].upper()


def render_status_email(order: Dict[str, Any]) -> Dict[str, str]:
    status = order["status"]
    if status not in STATUS_MESSAGES:
        raise NotificationFailure(f"No message for order status {status!r}")
    customer = order["customer_details"]
    body = f"""
<div style="font-family: Arial, sans-serif; padding: 20px;">
  <h2>Order Status Update</h2>
  <p>Hello {customer.get("name", "")},</p>
  <p>{STATUS_MESSAGES[status]}</p>
  <p>Order ID: #{short_order_id(order["id"])}</p>
  <p>Current Status: <strong>{status}</strong></p>
  <p>Total Amount: ₹{float(order.get("total_amount", 0)):.2f}</p>
  <hr>
  <p>If you have any questions, you can reply to this email to contact the farmer directly.</p>
  <p>Thank you for using {BRAND}!</p>
</div>
"""
    return {"subject": f"Your {BRAND} Order Status: {status}", "body": body}


class NotificationDispatcher:
    def __init__(self, db: Database, channel: Optional[EmailPort] = None):
        self.db = db
        self._channel = channel

    @property
    def channel(self) -> EmailPort:
        return self._channel if self._channel is not None else get_email_channel()

    def _farmer_email(self, farmer_name: str) -> Optional[str]:
        farmer = self.db["user"].find_one({"name": farmer_name}, {"email": 1})
        return farmer.get("email") if farmer else None

    def notify_status_change(self, order: Dict[str, Any]) -> Optional[dict]:
        """Send the status e-mail for `order` (a serialized order document).

        Returns the adapter result, or None when nothing was attempted or the
        attempt blew up. Never raises.
        """
        order_id = str(order.get("id"))
        recipient = (order.get("customer_details") or {}).get("email")
        if not recipient:
            logger.info("Order has no customer email, skipping status notification", order_id=order_id)
            return None

        try:
            reply_to = self._farmer_email(order.get("farmer"))
            message = render_status_email(order)
            result = self.channel.send(
                to=recipient,
                subject=message["subject"],
                body=message["body"],
                reply_to=reply_to,
            )
        except Exception as e:
            logger.error(
                "Failed to send status update email",
                order_id=order_id,
                error=str(e),
                exc_info=True,
            )
            return None

        if result.get("status") == "sent":
            logger.info("Status update email sent", order_id=order_id, to=recipient, message_id=result.get("message_id"))
        else:
            logger.warning("Status update email not delivered", order_id=order_id, to=recipient, error=result.get("error"))

        self._record(order_id, recipient, message["subject"], result)
        return result

    def _record(self, order_id: str, recipient: str, subject: str, result: dict) -> None:
        try:
            create_document(
                "notification",
                Notification(
                    order_id=order_id,
                    recipient=recipient,
                    subject=subject,
                    status="sent" if result.get("status") == "sent" else "failed",
                    message_id=result.get("message_id"),
                    error=result.get("error"),
                ),
                self.db,
            )
        except Exception as e:
            logger.error("Failed to record notification", order_id=order_id, error=str(e))
