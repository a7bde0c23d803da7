import smtplib

import notifier as notifier_module
from conftest import FULL_ADDRESS
from notifier import Notifier, OrderNotification, render_body


def sample(status="pending"):
    return OrderNotification(
        order_id=41,
        total="130.00",
        items=[{"name": "productA", "quantity": 2, "price": "50.00"}],
        status=status,
        payment_method="cod",
        message="Thanks for your order!",
        shipping=dict(FULL_ADDRESS),
    )


class FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return False

    def login(self, user, password):
        pass

    def send_message(self, msg):
        if FakeSMTP.fail_with:
            raise FakeSMTP.fail_with
        FakeSMTP.sent.append(msg)


def test_body_lists_items_and_address():
    body = render_body(sample())
    assert "Order #: 41" in body
    assert "2 x productA @ 50.00" in body
    assert "Total: 130.00" in body
    assert "Bengaluru, Karnataka 560001, India" in body


def test_unconfigured_smtp_skips(monkeypatch):
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    FakeSMTP.sent = []

    assert Notifier(host=None).send_order_notification("a@example.com", sample()) is False
    assert FakeSMTP.sent == []


def test_sends_via_smtp(monkeypatch):
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    FakeSMTP.sent = []
    FakeSMTP.fail_with = None

    ok = Notifier(host="smtp.test", from_email="shop@example.com").send_order_notification(
        "a@example.com", sample("shipped")
    )

    assert ok is True
    msg = FakeSMTP.sent[0]
    assert msg["To"] == "a@example.com"
    assert msg["Subject"] == "Order #41 - shipped"


def test_relay_failure_is_swallowed(monkeypatch, caplog):
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    FakeSMTP.fail_with = smtplib.SMTPServerDisconnected("gone")
    try:
        ok = Notifier(host="smtp.test").send_order_notification("a@example.com", sample())
    finally:
        FakeSMTP.fail_with = None

    assert ok is False
    assert "Email send failed" in caplog.text


def test_notify_skips_missing_recipients(monkeypatch):
    monkeypatch.setattr(notifier_module.smtplib, "SMTP", FakeSMTP)
    FakeSMTP.sent = []

    Notifier(host="smtp.test").notify(["a@example.com", None], sample())

    assert len(FakeSMTP.sent) == 1
