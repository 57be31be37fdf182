import threading
import time
from datetime import datetime

import pytest
import resend

from shopfront.errors import NotificationError
from shopfront.notifications import (
    NotificationDispatcher,
    Notifier,
    ResendMailer,
    normalize_order_email_items,
)

from .conftest import FailingMailer, RecordingMailer


def test_order_confirmation_renders_items(notifier, mailer):
    order = {
        "order_id": "abc-123",
        "items": [{"name": "Widget", "price": 19.99, "quantity": 3}],
        "total_amount": 59.97,
        "time_placed": datetime(2024, 5, 1, 12, 30),
    }

    assert notifier.send_order_confirmation(order, "Alice@Example.com", "alice") is True

    message = mailer.sent[0]
    assert message["to"] == "alice@example.com"
    assert message["subject"] == "Order Confirmation - abc-123"
    assert "59.97" in message["html"]
    assert "2024-05-01 12:30" in message["html"]


def test_missing_recipient_is_skipped(notifier, mailer):
    assert notifier.send_order_cancellation({"order_id": "x"}, "") is False
    assert mailer.sent == []


def test_dispatcher_drops_failed_jobs():
    dispatcher = NotificationDispatcher(synchronous=True)
    calls = []

    def boom():
        calls.append("boom")
        raise NotificationError("down")

    dispatcher.submit("failing job", boom)

    assert calls == ["boom"]


def test_background_dispatch(app):
    mailer = RecordingMailer()
    dispatcher = NotificationDispatcher(max_workers=1)
    notifier = Notifier(app, mailer, dispatcher)

    notifier.send_welcome("bob@example.com", "bob")
    dispatcher.shutdown(wait=True)

    assert mailer.subjects() == ["Welcome to Shopfront!"]


def test_failing_mailer_does_not_raise(app):
    mailer = FailingMailer()
    notifier = Notifier(app, mailer, NotificationDispatcher(synchronous=True))

    assert notifier.send_password_reset("bob@example.com", "bob", "http://x/reset", 60) is True
    assert len(mailer.sent) == 1


def test_resend_mailer_without_key_is_disabled():
    assert ResendMailer("", "shop@example.com").send("a@example.com", "Hi", "<p>Hi</p>") is False


def test_resend_mailer_wraps_provider_errors(monkeypatch):
    monkeypatch.setattr("resend.api_key", None)

    def fail(payload):
        raise RuntimeError("rate limited")

    monkeypatch.setattr("resend.Emails.send", fail)

    with pytest.raises(NotificationError):
        ResendMailer("re_test", "shop@example.com").send("a@example.com", "Hi", "<p>Hi</p>")


def test_resend_mailer_sends_payload(monkeypatch):
    monkeypatch.setattr("resend.api_key", None)
    captured = {}

    def send(payload):
        captured.update(payload)
        return {"id": "email-1"}

    monkeypatch.setattr("resend.Emails.send", send)

    sent = ResendMailer("re_test", "shop@example.com").send(
        "a@example.com", "Hi", "<p>Hi</p>", "Hi"
    )

    assert sent is True
    assert captured["to"] == ["a@example.com"]
    assert captured["text"] == "Hi"


def test_normalize_order_email_items():
    items = normalize_order_email_items(
        [{"name": "", "quantity": "2", "price": "1.5"}, "garbage"]
    )

    assert items == [{"name": "Item", "quantity": 2, "price": 1.5, "line_total": 3.0}]


def test_concurrent_sends_keep_the_api_key(monkeypatch):
    monkeypatch.setattr("resend.api_key", None)
    seen_keys = []
    lock = threading.Lock()

    def send(payload):
        time.sleep(0.01)
        with lock:
            seen_keys.append(resend.api_key)
        return {"id": "email"}

    monkeypatch.setattr("resend.Emails.send", send)
    mailer = ResendMailer("re_live", "shop@example.com")
    dispatcher = NotificationDispatcher(max_workers=2)

    for index in range(6):
        dispatcher.submit(
            f"job {index}",
            lambda index=index: mailer.send(f"user{index}@example.com", "Hi", "<p>Hi</p>"),
        )
    dispatcher.shutdown(wait=True)

    assert seen_keys == ["re_live"] * 6
