import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from errors import GatewayError, InvalidStateError, SignatureError, ValidationError
from payments import (
    CashOnDelivery,
    UpiRedirect,
    canonical_json,
    get_provider,
    sign,
    to_minor_units,
)


@pytest.mark.parametrize(
    "amount, expected",
    [
        (Decimal("130.00"), 13000),
        (Decimal("0.01"), 1),
        (Decimal("10.005"), 1001),
        (Decimal("10.004"), 1000),
        ("99.999", 10000),
        (0, 0),
    ],
)
def test_to_minor_units_rounds_half_up(amount, expected):
    assert to_minor_units(amount) == expected


def test_canonical_json_is_stable():
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == b'{"a":{"c":3,"d":2},"b":1}'


def make_upi(secret="s3cret"):
    return UpiRedirect(
        merchant_id="M1",
        secret=secret,
        base_url="https://gateway.test/pg/v1/",
        redirect_url="https://shop.test/status",
        callback_url="https://api.shop.test/webhook",
    )


def fake_order(order_id=7, total="130.00"):
    return SimpleNamespace(id=order_id, user_id=3, total=Decimal(total))


def test_signed_request_payload():
    upi = make_upi()
    signed = upi.build_signed_request(fake_order())

    assert signed.payload["merchantTransactionId"] == "7"
    assert signed.payload["amount"] == 13000
    assert signed.payload["callbackUrl"] == "https://api.shop.test/webhook"
    assert signed.signature == sign(signed.body, "s3cret")
    assert b"s3cret" not in signed.body


def test_unconfigured_gateway_refuses_to_sign():
    with pytest.raises(GatewayError):
        make_upi(secret="").build_signed_request(fake_order())


def test_verify_webhook_accepts_matching_signature():
    upi = make_upi()
    body = b'{"code":"PAYMENT_SUCCESS"}'
    upi.verify_webhook(body, sign(body, "s3cret"))
    upi.verify_webhook(body, sign(body, "s3cret").upper())


@pytest.mark.parametrize("signature", [None, "", "deadbeef", "\u00e9" * 64])
def test_verify_webhook_rejects(signature):
    with pytest.raises(SignatureError):
        make_upi().verify_webhook(b'{"code":"PAYMENT_SUCCESS"}', signature)


def test_parse_callback_maps_codes():
    upi = make_upi()
    body = json.dumps(
        {"code": "PAYMENT_DECLINED", "data": {"merchantTransactionId": "12", "transactionId": "T9", "amount": 500}}
    ).encode()

    callback = upi.parse_callback(body)

    assert callback.order_id == 12
    assert callback.status == "failed"
    assert callback.amount == 500
    assert callback.payment_id == "T9"


def test_parse_callback_flat_body():
    callback = make_upi().parse_callback(
        b'{"code":"PAYMENT_SUCCESS","merchantTransactionId":"5","providerReferenceId":"P5"}'
    )
    assert callback.order_id == 5
    assert callback.status == "paid"
    assert callback.payment_id == "P5"


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"[1, 2]",
        b'{"data": {"merchantTransactionId": "1"}}',
        b'{"code": "PAYMENT_SUCCESS", "data": {}}',
        b'{"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "1", "amount": "lots"}}',
        b'{"code": ["PAYMENT_SUCCESS"], "merchantTransactionId": "1"}',
        b'{"code": {"state": "PAYMENT_SUCCESS"}, "merchantTransactionId": "1"}',
    ],
)
def test_parse_callback_rejects_malformed(body):
    with pytest.raises(ValidationError):
        make_upi().parse_callback(body)


def test_cod_needs_no_online_payment():
    cod = CashOnDelivery()
    assert cod.clears_cart_on_placement is True
    with pytest.raises(InvalidStateError):
        cod.initiate(fake_order())


def test_upi_keeps_cart_on_placement():
    assert make_upi().clears_cart_on_placement is False


def test_get_provider_unknown_method():
    with pytest.raises(ValidationError):
        get_provider({"cod": CashOnDelivery()}, "upi")
