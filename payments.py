"""
Payment gateway adapters.

Two providers sit behind one interface and are picked by the order's
payment_method:

- cash on delivery: nothing to call, the order is actionable as soon as it
  is placed and the cart is consumed immediately;
- UPI redirect: the order is sent to an external gateway as a signed
  request, the customer is redirected to the gateway's pay page and the
  final result arrives later through a signed webhook.

Signatures are HMAC-SHA256 over the exact bytes exchanged, keyed with a
secret that only the merchant and the gateway hold. Amounts on the wire are
integers in minor currency units (paise).
"""
import base64
import hashlib
import hmac
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, NamedTuple, Optional

import httpx

from config import settings
from errors import GatewayError, InvalidStateError, SignatureError, ValidationError
from models import Order, OrderStatus, PaymentMethod

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Verify"

# gateway result code -> order status; codes not listed are not final
CALLBACK_STATUS = {
    "PAYMENT_SUCCESS": OrderStatus.PAID,
    "PAYMENT_ERROR": OrderStatus.FAILED,
    "PAYMENT_DECLINED": OrderStatus.FAILED,
    "TIMED_OUT": OrderStatus.FAILED,
}


def to_minor_units(amount) -> int:
    """Convert a decimal currency amount to whole paise, rounding half up."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def canonical_json(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign(data: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


class SignedRequest(NamedTuple):
    payload: dict
    body: bytes
    signature: str


class GatewayCallback(NamedTuple):
    order_id: Optional[int]
    gateway_order_id: Optional[str]
    payment_id: Optional[str]
    code: str
    status: Optional[str]
    amount: Optional[int]


class PaymentProvider:
    """Base interface; the order orchestrator only talks to this."""

    name = ""
    clears_cart_on_placement = True

    def initiate(self, order: Order) -> dict:
        raise InvalidStateError(f"Payment method '{self.name}' does not need an online payment")


class CashOnDelivery(PaymentProvider):
    name = PaymentMethod.COD
    clears_cart_on_placement = True


class UpiRedirect(PaymentProvider):
    name = PaymentMethod.UPI
    # the cart survives until the gateway confirms payment
    clears_cart_on_placement = False

    def __init__(
        self,
        merchant_id: str,
        secret: str,
        base_url: str,
        redirect_url: str,
        callback_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.merchant_id = merchant_id
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.redirect_url = redirect_url
        self.callback_url = callback_url
        self.timeout = timeout
        self.client = client

    def build_signed_request(self, order: Order) -> SignedRequest:
        if not self.secret:
            raise GatewayError("UPI gateway is not configured", retryable=False)
        payload = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": str(order.id),
            "merchantUserId": f"U{order.user_id}",
            "amount": to_minor_units(order.total),
            "redirectUrl": f"{self.redirect_url}?orderId={order.id}",
            "redirectMode": "REDIRECT",
            "callbackUrl": self.callback_url,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        body = canonical_json(payload)
        return SignedRequest(payload=payload, body=body, signature=sign(body, self.secret))

    def _post(self, url: str, **kwargs) -> httpx.Response:
        if self.client is not None:
            return self.client.post(url, timeout=self.timeout, **kwargs)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, **kwargs)

    def initiate(self, order: Order) -> dict:
        signed = self.build_signed_request(order)
        try:
            response = self._post(
                f"{self.base_url}/pay",
                json={"request": base64.b64encode(signed.body).decode("ascii")},
                headers={SIGNATURE_HEADER: signed.signature, "X-Merchant-Id": self.merchant_id},
            )
        except httpx.TimeoutException as exc:
            logger.warning("UPI initiation for order %s timed out: %s", order.id, exc)
            raise GatewayError("Payment gateway timed out", retryable=True) from exc
        except httpx.HTTPError as exc:
            logger.warning("UPI initiation for order %s failed: %s", order.id, exc)
            raise GatewayError("Payment gateway unreachable", retryable=True) from exc

        if response.status_code >= 400:
            logger.warning(
                "UPI gateway rejected order %s with HTTP %s", order.id, response.status_code
            )
            raise GatewayError(
                "Payment gateway returned an error",
                retryable=response.status_code >= 500,
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("Payment gateway sent an unreadable response", retryable=True) from exc

        body = data.get("data") or {}
        redirect = ((body.get("instrumentResponse") or {}).get("redirectInfo") or {}).get("url")
        if not data.get("success") or not redirect:
            logger.warning("UPI gateway declined order %s: %s", order.id, data.get("code"))
            raise GatewayError(data.get("message") or "Payment gateway declined the request", retryable=False)

        return {
            "redirect_url": redirect,
            "gateway_order_id": body.get("transactionId") or signed.payload["merchantTransactionId"],
            "amount": signed.payload["amount"],
        }

    def verify_webhook(self, raw_body: bytes, supplied_signature: Optional[str]) -> None:
        if not self.secret or not supplied_signature:
            raise SignatureError("Missing webhook signature")
        expected = sign(raw_body, self.secret).encode("ascii")
        # header values may carry any latin-1 text; compare as bytes
        supplied = supplied_signature.strip().lower().encode("utf-8", "replace")
        if not hmac.compare_digest(expected, supplied):
            raise SignatureError()

    def parse_callback(self, raw_body: bytes) -> GatewayCallback:
        try:
            data = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ValidationError("Webhook body must be a JSON object")
        # some gateways wrap the result in a "data" object
        inner = data.get("data") if isinstance(data.get("data"), dict) else data

        code = data.get("code") or inner.get("code") or inner.get("state")
        if not code:
            raise ValidationError("Webhook body has no result code")
        if not isinstance(code, str):
            raise ValidationError("Webhook result code must be a string")

        merchant_txn = inner.get("merchantTransactionId")
        order_id = None
        if merchant_txn is not None:
            try:
                order_id = int(merchant_txn)
            except (TypeError, ValueError):
                order_id = None
        gateway_order_id = inner.get("transactionId")
        if order_id is None and not gateway_order_id:
            raise ValidationError("Webhook body does not reference an order")

        amount = inner.get("amount")
        if amount is not None:
            try:
                amount = int(amount)
            except (TypeError, ValueError) as exc:
                raise ValidationError("Webhook amount is not an integer") from exc

        return GatewayCallback(
            order_id=order_id,
            gateway_order_id=gateway_order_id,
            payment_id=inner.get("providerReferenceId") or gateway_order_id,
            code=code,
            status=CALLBACK_STATUS.get(code),
            amount=amount,
        )


def default_providers() -> Dict[str, PaymentProvider]:
    return {
        PaymentMethod.COD: CashOnDelivery(),
        PaymentMethod.UPI: UpiRedirect(
            merchant_id=settings.upi_merchant_id,
            secret=settings.upi_secret,
            base_url=settings.upi_base_url,
            redirect_url=settings.upi_redirect_url,
            callback_url=settings.upi_callback_url,
            timeout=settings.upi_timeout,
        ),
    }


def get_provider(providers: Dict[str, PaymentProvider], method: str) -> PaymentProvider:
    try:
        return providers[method]
    except KeyError:
        raise ValidationError(f"Unsupported payment method: {method}") from None
