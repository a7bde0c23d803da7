"""
Shared fixtures for the Shop API test suite.

Everything runs against a single in-memory SQLite database that is rebuilt
for every test. The payment gateway and the chatbot upstream are served by
httpx.MockTransport handlers; outgoing mail is recorded instead of sent.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["UPI_MERCHANT_ID"] = "MERCHANTTEST"
os.environ["UPI_SECRET"] = "upi-test-secret"
os.environ["UPI_BASE_URL"] = "https://gateway.test/pg/v1"
os.environ["ADMIN_EMAIL"] = "admin@shop.test"
os.environ["CHATBOT_API_KEY"] = "chat-test-key"
os.environ["CHATBOT_DAILY_LIMIT"] = "2"
os.environ.pop("SMTP_HOST", None)

import json
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_access_token
from chatbot import ChatbotClient
from database import Base, SessionLocal, engine, init_db
from models import CartItem, Product, User
from notifier import Notifier
from orders import OrderService
from payments import SIGNATURE_HEADER, CashOnDelivery, UpiRedirect, sign

UPI_SECRET = "upi-test-secret"

FULL_ADDRESS = {
    "shipping_name": "Asha Rao",
    "shipping_mobile": "9876543210",
    "shipping_line1": "12 MG Road",
    "shipping_line2": "Flat 4B",
    "shipping_city": "Bengaluru",
    "shipping_state": "Karnataka",
    "shipping_postal_code": "560001",
    "shipping_country": "India",
}


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__(admin_email="admin@shop.test")
        self.sent = []
        self.fail = False

    def send_order_notification(self, to_email, notification):
        if self.fail:
            raise RuntimeError("mail relay down")
        if to_email:
            self.sent.append((to_email, notification))
        return True


class FakeGateway:
    """Answers UPI initiation calls; `mode` switches the behaviour."""

    def __init__(self):
        self.mode = "ok"
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.mode == "timeout":
            raise httpx.ReadTimeout("gateway too slow", request=request)
        if self.mode == "error":
            return httpx.Response(503, json={"success": False, "code": "INTERNAL_SERVER_ERROR"})
        if self.mode == "declined":
            return httpx.Response(200, json={"success": False, "code": "BAD_REQUEST", "message": "Invalid amount"})
        return httpx.Response(
            200,
            json={
                "success": True,
                "code": "PAYMENT_INITIATED",
                "data": {
                    "merchantId": "MERCHANTTEST",
                    "transactionId": "T2410190001",
                    "instrumentResponse": {
                        "type": "PAY_PAGE",
                        "redirectInfo": {"url": "https://gateway.test/pay/T2410190001", "method": "GET"},
                    },
                },
            },
        )


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def providers(gateway):
    upi = UpiRedirect(
        merchant_id="MERCHANTTEST",
        secret=UPI_SECRET,
        base_url="https://gateway.test/pg/v1",
        redirect_url="https://shop.test/payment/status",
        callback_url="https://api.shop.test/api/payments/webhook",
        timeout=2,
        client=httpx.Client(transport=httpx.MockTransport(gateway.handler)),
    )
    return {"cod": CashOnDelivery(), "upi": upi}


@pytest.fixture
def service(db, notifier, providers):
    return OrderService(db, notifier, providers)


@pytest.fixture
def chat_upstream():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200, json={"candidates": [{"content": {"parts": [{"text": "Try the steel bottle."}]}}]}
        )

    client = ChatbotClient(
        "https://llm.test/v1beta/models",
        "chat-test-key",
        "test-model",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    client.calls = calls
    return client


@pytest.fixture
def client(notifier, providers, chat_upstream):
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    main.app.dependency_overrides[main.get_providers] = lambda: providers
    main.app.dependency_overrides[main.get_chatbot] = lambda: chat_upstream
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


# -----------------
# Data helpers
# -----------------
def make_user(db, email="asha@example.com", role="user", address=True):
    user = User(email=email, name=email.split("@")[0], role=role)
    if address:
        for field, value in FULL_ADDRESS.items():
            setattr(user, field, value)
    db.add(user)
    db.commit()
    return user


def make_product(db, name, price, stock):
    product = Product(name=name, price=Decimal(str(price)), stock=stock)
    db.add(product)
    db.commit()
    return product


def put_in_cart(db, user, product, quantity):
    db.add(CartItem(user_id=user.id, product_id=product.id, quantity=quantity))
    db.commit()


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def signed_webhook(payload: dict, secret: str = UPI_SECRET):
    body = json.dumps(payload).encode("utf-8")
    return body, {SIGNATURE_HEADER: sign(body, secret), "Content-Type": "application/json"}


def success_payload(order, payment_id="PAYREF1", amount=None):
    return {
        "success": True,
        "code": "PAYMENT_SUCCESS",
        "data": {
            "merchantId": "MERCHANTTEST",
            "merchantTransactionId": str(order.id),
            "transactionId": "T2410190001",
            "providerReferenceId": payment_id,
            "amount": amount if amount is not None else int(order.total * 100),
        },
    }


def failure_payload(order):
    return {
        "success": False,
        "code": "PAYMENT_ERROR",
        "data": {
            "merchantId": "MERCHANTTEST",
            "merchantTransactionId": str(order.id),
            "transactionId": "T2410190001",
        },
    }
