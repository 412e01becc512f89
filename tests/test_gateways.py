import hashlib
import hmac
import json
import time
import pytest
import requests
import stripe
from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4
from razorpay.errors import ServerError
from app.core.errors import GatewayError, SignatureInvalid, ValidationError
from app.services.gateways import (
    CallbackOutcome,
    RazorpayGateway,
    StripeGateway,
    to_minor_units,
)

WEBHOOK_SECRET = "whsec_test"


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _razorpay():
    return RazorpayGateway(
        key_id="rzp_test_key",
        key_secret="rzp_secret",
        webhook_secret=WEBHOOK_SECRET,
        currency="INR",
        timeout=5,
    )


def _stripe():
    return StripeGateway(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET, tolerance=300, currency="INR")


def _stripe_header(body: bytes, timestamp: int = None, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={sign(secret, str(timestamp).encode() + b'.' + body)}"


def test_to_minor_units():
    assert to_minor_units(Decimal("565.00")) == 56500
    assert to_minor_units(Decimal("0.005")) == 1


# --- RAZORPAY ---

@pytest.mark.asyncio
async def test_razorpay_create_intent():
    gateway = _razorpay()
    order_id = uuid4()
    with patch.object(gateway.client.order, "create", return_value={
        "id": "order_abc", "amount": 56500, "currency": "INR",
    }) as mock_create:
        intent = await gateway.create_intent(order_id, Decimal("565.00"))

    assert intent.intent_id == "order_abc"
    assert intent.amount_minor == 56500
    data = mock_create.call_args.args[0]
    assert data["receipt"] == str(order_id)
    assert data["amount"] == 56500
    assert mock_create.call_args.kwargs["timeout"] == 5


@pytest.mark.asyncio
async def test_razorpay_refund():
    gateway = _razorpay()
    with patch.object(gateway.client.payment, "refund", return_value={"id": "rfnd_1"}) as mock_refund:
        refund_id = await gateway.refund("pay_1", Decimal("100.00"))

    assert refund_id == "rfnd_1"
    assert mock_refund.call_args.args == ("pay_1", {"amount": 10000})


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    requests.ConnectTimeout("timed out"),
    requests.ConnectionError("connection reset"),
    ServerError("razorpay is down"),
])
async def test_razorpay_errors_surface_as_gateway_error(error):
    gateway = _razorpay()
    with patch.object(gateway.client.order, "create", side_effect=error):
        with pytest.raises(GatewayError):
            await gateway.create_intent(uuid4(), Decimal("100"))


def test_razorpay_webhook_verification():
    body = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_abc"}}},
    }).encode()
    gateway = _razorpay()

    callback = gateway.verify_and_parse_callback(body, sign(WEBHOOK_SECRET, body))
    assert callback.outcome == CallbackOutcome.SUCCEEDED
    assert callback.intent_id == "order_abc"
    assert callback.payment_reference == "pay_1"

    with pytest.raises(SignatureInvalid):
        gateway.verify_and_parse_callback(body, sign("wrong", body))
    with pytest.raises(SignatureInvalid):
        gateway.verify_and_parse_callback(body, None)
    # A single changed byte invalidates the signature.
    with pytest.raises(SignatureInvalid):
        gateway.verify_and_parse_callback(body + b" ", sign(WEBHOOK_SECRET, body))


def test_razorpay_unhandled_event_is_ignored():
    body = json.dumps({"event": "refund.created", "payload": {}}).encode()
    callback = _razorpay().verify_and_parse_callback(body, sign(WEBHOOK_SECRET, body))
    assert callback.outcome == CallbackOutcome.IGNORED


def test_razorpay_signed_garbage_is_rejected():
    body = b"not json"
    with pytest.raises(ValidationError):
        _razorpay().verify_and_parse_callback(body, sign(WEBHOOK_SECRET, body))


def test_razorpay_checkout_signature():
    gateway = _razorpay()
    good = sign("rzp_secret", b"order_abc|pay_1")
    gateway.verify_checkout_signature("order_abc", "pay_1", good)
    with pytest.raises(SignatureInvalid):
        gateway.verify_checkout_signature("order_abc", "pay_2", good)


# --- STRIPE ---

@pytest.mark.asyncio
async def test_stripe_create_intent_and_refund():
    gateway = _stripe()
    intent_response = {"id": "pi_1", "amount": 56500, "currency": "inr", "client_secret": "pi_1_secret"}

    with patch("stripe.PaymentIntent.create", return_value=intent_response) as mock_intent, \
            patch("stripe.Refund.create", return_value={"id": "re_1"}) as mock_refund:
        intent = await gateway.create_intent(uuid4(), Decimal("565.00"))
        refund_id = await gateway.refund("pi_1", Decimal("100.00"))

    assert intent.client_secret == "pi_1_secret"
    assert refund_id == "re_1"
    assert mock_intent.call_args.kwargs["api_key"] == "sk_test"
    assert mock_intent.call_args.kwargs["amount"] == 56500
    assert mock_intent.call_args.kwargs["currency"] == "inr"
    assert mock_refund.call_args.kwargs["payment_intent"] == "pi_1"
    assert mock_refund.call_args.kwargs["amount"] == 10000


@pytest.mark.asyncio
async def test_stripe_errors_surface_as_gateway_error():
    with patch("stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("network down")):
        with pytest.raises(GatewayError):
            await _stripe().create_intent(uuid4(), Decimal("100"))


def test_stripe_webhook_verification():
    body = json.dumps({
        "id": "evt_1",
        "object": "event",
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_1", "object": "payment_intent"}},
    }).encode()
    gateway = _stripe()

    callback = gateway.verify_and_parse_callback(body, _stripe_header(body))
    assert callback.outcome == CallbackOutcome.FAILED
    assert callback.intent_id == "pi_1"
    assert callback.event_id == "evt_1"

    with pytest.raises(SignatureInvalid):
        gateway.verify_and_parse_callback(body, _stripe_header(body, secret="other"))
    with pytest.raises(SignatureInvalid):
        gateway.verify_and_parse_callback(body, "v1=deadbeef")
    with pytest.raises(SignatureInvalid):
        gateway.verify_and_parse_callback(body, None)


def test_stripe_webhook_timestamp_tolerance():
    body = json.dumps({
        "id": "evt_2",
        "object": "event",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "object": "payment_intent"}},
    }).encode()
    now = int(time.time())

    with pytest.raises(SignatureInvalid):
        _stripe().verify_and_parse_callback(body, _stripe_header(body, timestamp=now - 301))
    callback = _stripe().verify_and_parse_callback(body, _stripe_header(body, timestamp=now - 250))
    assert callback.outcome == CallbackOutcome.SUCCEEDED


@pytest.mark.asyncio
async def test_close_releases_razorpay_session():
    gateway = _razorpay()
    gateway.client.session = MagicMock()
    await gateway.close()
    gateway.client.session.close.assert_called_once()
