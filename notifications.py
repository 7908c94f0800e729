"""
Notification dispatch.

Email and SMS clients are built once at startup and handed to
`NotificationService`, which fans each event out to every channel the
recipient can be reached on. Delivery is best effort: a channel failure is
logged and reported in the result, nothing is queued or resent.
"""
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional

from fastapi import Request
from twilio.rest import Client as TwilioClient

import config

logger = logging.getLogger(__name__)


class EmailSender:
    def __init__(self, host: Optional[str] = None, port: int = 587, user: Optional[str] = None,
                 password: Optional[str] = None, sender: str = "no-reply@marketplace.local"):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        if not host:
            logger.info("Email sender running in mock mode")

    @property
    def mock(self) -> bool:
        return not self.host

    def send(self, to: str, subject: str, body: str) -> Dict[str, Any]:
        if self.mock:
            logger.info("EMAIL (mock) to=%s subject=%s", to, subject)
            return {"success": True, "message_id": f"mock_{int(datetime.now().timestamp() * 1000)}"}
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email to %s failed: %s", to, e)
            return {"success": False, "error": str(e)}
        return {"success": True, "message_id": msg.get("Message-ID")}


class SMSSender:
    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None,
                 from_number: Optional[str] = None):
        self.from_number = from_number
        self.client = None
        if account_sid and auth_token:
            self.client = TwilioClient(account_sid, auth_token)
        else:
            logger.info("SMS sender running in mock mode")

    def send(self, to: str, message: str) -> Dict[str, Any]:
        if self.client is None:
            logger.info("SMS (mock) to=%s message=%s", to, message)
            return {"success": True, "sid": f"mock_{int(datetime.now().timestamp() * 1000)}"}
        try:
            response = self.client.messages.create(body=message, from_=self.from_number, to=to)
        except Exception as e:
            logger.error("SMS to %s failed: %s", to, e)
            return {"success": False, "error": str(e)}
        return {"success": True, "sid": response.sid}


def _order_link(order: dict) -> str:
    return f"{config.MARKETPLACE_URL}/orders/{order.get('id') or order.get('order_id')}"


class NotificationService:
    def __init__(self, email: EmailSender, sms: SMSSender):
        self.email = email
        self.sms = sms

    def _dispatch(self, event: str, email_to: Optional[str], email_fn: Optional[Callable[[], Dict]],
                  sms_to: Optional[str], sms_fn: Optional[Callable[[], Dict]]) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        if email_to and email_fn is not None:
            results["email"] = self._attempt(event, "email", email_fn)
        if sms_to and sms_fn is not None:
            results["sms"] = self._attempt(event, "sms", sms_fn)
        ok = all(r.get("success") for r in results.values())
        if not ok:
            logger.warning("%s notification partially failed: %s", event, results)
        return {"success": ok, "results": results}

    @staticmethod
    def _attempt(event: str, channel: str, fn: Callable[[], Dict]) -> Dict[str, Any]:
        try:
            return fn()
        except Exception as e:
            logger.exception("%s notification over %s raised", event, channel)
            return {"success": False, "error": str(e)}

    def send_order_confirmation(self, customer: dict, order: dict) -> Dict[str, Any]:
        name = customer.get("name") or "there"
        subject = f"Order {order['order_id']} confirmed"
        body = (f"Hi {name}, your order {order['order_id']} for {order['total']:.2f} has been placed.\n"
                f"Track it at {_order_link(order)}")
        sms = f"Hi {name}! Your order #{order['order_id']} for {order['total']:.2f} has been confirmed. Track at: {_order_link(order)}"
        return self._dispatch(
            "order_confirmation",
            customer.get("email"), lambda: self.email.send(customer["email"], subject, body),
            customer.get("phone"), lambda: self.sms.send(customer["phone"], sms),
        )

    def send_order_status_update(self, customer: dict, order: dict) -> Dict[str, Any]:
        status = order["status"]
        subject = f"Order {order['order_id']} is now {status.replace('_', ' ')}"
        sms = f"Order #{order['order_id']} status: {status.upper()}"
        if order.get("tracking_number"):
            sms += f" | Tracking: {order['tracking_number']}"
        sms += f" | Track: {_order_link(order)}"
        return self._dispatch(
            "order_status_update",
            customer.get("email"), lambda: self.email.send(customer["email"], subject, sms),
            customer.get("phone"), lambda: self.sms.send(customer["phone"], sms),
        )

    def send_welcome(self, customer: dict) -> Dict[str, Any]:
        name = customer.get("name") or "there"
        text = f"Welcome to the marketplace, {name}!"
        return self._dispatch(
            "welcome",
            customer.get("email"), lambda: self.email.send(customer["email"], "Welcome!", text),
            customer.get("phone"), lambda: self.sms.send(customer["phone"], text),
        )

    def send_payment_confirmation(self, customer: dict, payment: dict) -> Dict[str, Any]:
        text = f"Payment of {payment['amount']:.2f} received for order {payment['order_id']}."
        return self._dispatch(
            "payment_confirmation",
            customer.get("email"), lambda: self.email.send(customer["email"], "Payment received", text),
            customer.get("phone"), lambda: self.sms.send(customer["phone"], text),
        )

    def send_low_stock_alert(self, seller: dict, products: List[dict]) -> Dict[str, Any]:
        lines = "\n".join(f"- {p.get('name')}: {p.get('stock')} left" for p in products)
        return self._dispatch(
            "low_stock",
            seller.get("email"), lambda: self.email.send(seller["email"], "Low stock alert", f"Running low:\n{lines}"),
            seller.get("contact_number"),
            lambda: self.sms.send(seller["contact_number"], f"Low stock alert: {len(products)} product(s) running low."),
        )

    def send_sale_alert(self, customer: dict, alert: dict) -> Dict[str, Any]:
        product = alert["product"]
        text = (f"{product.get('name')} on your wishlist dropped from {alert['original_price']:.2f} "
                f"to {alert['sale_price']:.2f} ({alert['discount']:.0f}% off).")
        return self._dispatch(
            "wishlist_sale",
            customer.get("email"), lambda: self.email.send(customer["email"], "Price drop on your wishlist", text),
            customer.get("phone"), lambda: self.sms.send(customer["phone"], text),
        )

    def send_restock_alert(self, customer: dict, alert: dict) -> Dict[str, Any]:
        text = f"{alert['product'].get('name')} on your wishlist is back in stock."
        return self._dispatch(
            "wishlist_restock",
            customer.get("email"), lambda: self.email.send(customer["email"], "Back in stock", text),
            customer.get("phone"), lambda: self.sms.send(customer["phone"], text),
        )


def build_notifier() -> NotificationService:
    email = EmailSender(config.SMTP_HOST, config.SMTP_PORT, config.SMTP_USER, config.SMTP_PASSWORD, config.EMAIL_FROM)
    sms = SMSSender(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_PHONE_NUMBER)
    return NotificationService(email, sms)


def get_notifier(request: Request) -> NotificationService:
    return request.app.state.notifier
