"""Outbound email.

Mail is a best-effort side effect: every job runs on a small thread pool
after the request that triggered it has been answered, and a failed send is
logged and dropped. Nothing here is ever allowed to fail the caller.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional

import resend
from flask import render_template

from .errors import NotificationError
from .utils import normalize_email, safe_float, safe_positive_int

logger = logging.getLogger(__name__)


class ResendMailer:
    """Mail sender backed by the Resend API."""

    def __init__(self, api_key: Optional[str], sender: str):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        # The SDK reads a module-level key, set once for every worker thread.
        if self.api_key:
            resend.api_key = self.api_key

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> bool:
        if not self.api_key:
            logger.info("Email delivery disabled, skipping %r to %s", subject, to)
            return False

        payload: Dict[str, object] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            raise NotificationError(str(exc)) from exc

        if not isinstance(response, dict) or not response.get("id"):
            raise NotificationError(str(response))

        return True


class NotificationDispatcher:
    """Fire-and-forget job runner with a drop-on-failure policy."""

    def __init__(self, max_workers: int = 2, synchronous: bool = False):
        self.synchronous = synchronous
        self._executor = (
            None
            if synchronous
            else ThreadPoolExecutor(
                max_workers=max(1, max_workers), thread_name_prefix="notifications"
            )
        )

    def submit(self, description: str, job: Callable[[], object]) -> None:
        if self.synchronous:
            self._run(description, job)
            return
        try:
            self._executor.submit(self._run, description, job)
        except RuntimeError as exc:
            logger.error("Could not queue %s: %s", description, exc)

    @staticmethod
    def _run(description: str, job: Callable[[], object]) -> None:
        try:
            job()
        except Exception as exc:
            logger.error("Notification %s failed: %s", description, exc)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def normalize_order_email_items(items: List[Dict]) -> List[Dict]:
    normalized_items: List[Dict] = []
    for entry in items or []:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip() or "Item"
        quantity = safe_positive_int(entry.get("quantity"), 1) or 1
        price_value = round(safe_float(entry.get("price"), 0.0), 2)
        normalized_items.append(
            {
                "name": name,
                "quantity": quantity,
                "price": price_value,
                "line_total": round(price_value * quantity, 2),
            }
        )
    return normalized_items


class Notifier:
    """Builds the shop's emails and hands them to the dispatcher.

    Templates are rendered on the worker inside a fresh app context, so
    callers only pass plain data.
    """

    def __init__(self, app, mailer, dispatcher: NotificationDispatcher):
        self.app = app
        self.mailer = mailer
        self.dispatcher = dispatcher

    def _queue(self, description: str, recipient: Optional[str], subject: str,
               template: str, text: str, **context) -> bool:
        recipient_email = normalize_email(recipient)
        if not recipient_email:
            logger.warning("Skipping %s: no recipient email", description)
            return False

        def job():
            with self.app.app_context():
                html = render_template(template, **context)
            self.mailer.send(recipient_email, subject, html, text)

        self.dispatcher.submit(description, job)
        return True

    def send_welcome(self, email: str, username: str) -> bool:
        return self._queue(
            f"welcome email for {email}",
            email,
            "Welcome to Shopfront!",
            "emails/welcome.html",
            f"Hi {username}, your Shopfront account for {email} is ready.",
            username=username,
            email=email,
        )

    def send_password_reset(self, email: str, username: str, reset_url: str,
                            expiration_minutes: int) -> bool:
        return self._queue(
            f"password reset email for {email}",
            email,
            "Password Reset Request",
            "emails/password_reset.html",
            f"Reset your Shopfront password within {expiration_minutes} minutes: {reset_url}",
            username=username,
            reset_url=reset_url,
            expiration_minutes=expiration_minutes,
        )

    def send_order_confirmation(self, order_document: Dict, email: str,
                                username: str = "") -> bool:
        order_id = str(order_document.get("order_id") or "")
        items = normalize_order_email_items(order_document.get("items"))
        total = round(safe_float(order_document.get("total_amount"), 0.0), 2)
        placed_at = order_document.get("time_placed")
        if not isinstance(placed_at, datetime):
            placed_at = datetime.utcnow()
        return self._queue(
            f"order confirmation for {order_id}",
            email,
            f"Order Confirmation - {order_id}",
            "emails/order_confirmation.html",
            f"Thank you for your purchase! Order {order_id}, total {total:.2f}.",
            username=username,
            order_id=order_id,
            items=items,
            total=total,
            placed_at=placed_at,
        )

    def send_order_cancellation(self, order_document: Dict, email: str,
                                username: str = "", cancelled_by: str = "customer") -> bool:
        order_id = str(order_document.get("order_id") or "")
        return self._queue(
            f"order cancellation for {order_id}",
            email,
            f"Order Cancelled - {order_id}",
            "emails/order_cancellation.html",
            f"Order {order_id} was cancelled by {cancelled_by}.",
            username=username,
            order_id=order_id,
            cancelled_by=cancelled_by,
        )
