"""
Payment gateway adapters.

Razorpay and Stripe are normalized to one contract:

* ``create_intent(order_id, amount)`` -> GatewayIntent
* ``verify_and_parse_callback(raw_payload, signature)`` -> PaymentCallback,
  raising SignatureInvalid before anything is parsed
* ``refund(payment_reference, amount)`` -> gateway refund id

Both adapters sit on the official SDKs. The SDKs are blocking, so outbound
calls run in the threadpool. Timeouts, transport failures and error responses
surface as GatewayError; nothing is retried here.
"""
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID
import razorpay
import requests
import stripe
from razorpay.errors import BadRequestError, ServerError, SignatureVerificationError
from razorpay.errors import GatewayError as RazorpayGatewayError
from fastapi.concurrency import run_in_threadpool
from app.core import config
from app.core.errors import GatewayError, SignatureInvalid, ValidationError
from app.models.order import PaymentGateway

log = logging.getLogger("payment_gateways")

RAZORPAY_CALL_ERRORS = (
    BadRequestError,
    RazorpayGatewayError,
    ServerError,
    requests.RequestException,
)


class CallbackOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class GatewayIntent:
    intent_id: str
    amount_minor: int
    currency: str
    client_secret: Optional[str] = None


@dataclass
class PaymentCallback:
    event_type: str
    outcome: CallbackOutcome
    intent_id: Optional[str] = None
    payment_reference: Optional[str] = None
    event_id: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    """Rupees/dollars to paise/cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _load_json(raw_payload: bytes) -> Dict[str, Any]:
    try:
        return json.loads(raw_payload)
    except (TypeError, ValueError):
        raise ValidationError("Callback payload is not valid JSON.")


def _outcome(event_type: str, success_events, failure_events) -> CallbackOutcome:
    if event_type in success_events:
        return CallbackOutcome.SUCCEEDED
    if event_type in failure_events:
        return CallbackOutcome.FAILED
    return CallbackOutcome.IGNORED


class PaymentGatewayAdapter:
    provider: PaymentGateway

    async def create_intent(self, order_id: UUID, amount: Decimal) -> GatewayIntent:
        raise NotImplementedError

    def verify_and_parse_callback(self, raw_payload: bytes, signature: Optional[str]) -> PaymentCallback:
        raise NotImplementedError

    async def refund(self, payment_reference: str, amount: Decimal) -> str:
        raise NotImplementedError

    async def close(self):
        pass


class RazorpayGateway(PaymentGatewayAdapter):
    """Razorpay Orders API; webhooks signed with HMAC-SHA256 over the raw body."""
    provider = PaymentGateway.RAZORPAY

    SUCCESS_EVENTS = {"payment.captured", "order.paid"}
    FAILURE_EVENTS = {"payment.failed"}

    def __init__(self, key_id: str = config.RAZORPAY_KEY_ID,
                 key_secret: str = config.RAZORPAY_KEY_SECRET,
                 webhook_secret: str = config.RAZORPAY_WEBHOOK_SECRET,
                 currency: str = config.PAYMENT_CURRENCY,
                 timeout: float = config.GATEWAY_TIMEOUT_SECONDS):
        self.client = razorpay.Client(auth=(key_id, key_secret))
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.timeout = timeout

    async def _call(self, label: str, fn, *args) -> Dict[str, Any]:
        log.info(f"Calling razorpay: {label}")
        try:
            return await run_in_threadpool(fn, *args, timeout=self.timeout)
        except requests.Timeout as e:
            raise GatewayError(f"razorpay timed out: {e}")
        except RAZORPAY_CALL_ERRORS as e:
            log.error(f"razorpay {label} failed: {e}")
            raise GatewayError(f"razorpay request failed: {e}")

    async def create_intent(self, order_id: UUID, amount: Decimal) -> GatewayIntent:
        data = await self._call("order.create", self.client.order.create, {
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "receipt": str(order_id),
            "payment_capture": 1,
        })
        return GatewayIntent(intent_id=data["id"], amount_minor=data["amount"], currency=data["currency"])

    def verify_and_parse_callback(self, raw_payload: bytes, signature: Optional[str]) -> PaymentCallback:
        if not self.webhook_secret or not signature:
            raise SignatureInvalid("Missing Razorpay webhook signature.")
        try:
            body = raw_payload.decode("utf-8")
            self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except (UnicodeDecodeError, SignatureVerificationError):
            raise SignatureInvalid("Razorpay webhook signature mismatch.")

        event = _load_json(raw_payload)
        event_type = event.get("event", "")
        payment = ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}
        return PaymentCallback(
            event_type=event_type,
            outcome=_outcome(event_type, self.SUCCESS_EVENTS, self.FAILURE_EVENTS),
            intent_id=payment.get("order_id"),
            payment_reference=payment.get("id"),
        )

    def verify_checkout_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> None:
        """Client-side checkout handshake, signed with the key secret over "<order_id>|<payment_id>"."""
        if not self.key_secret or not signature:
            raise SignatureInvalid("Missing Razorpay checkout signature.")
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": gateway_order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
        except SignatureVerificationError:
            raise SignatureInvalid("Razorpay checkout signature mismatch.")

    async def refund(self, payment_reference: str, amount: Decimal) -> str:
        data = await self._call(
            "payment.refund", self.client.payment.refund, payment_reference, {"amount": to_minor_units(amount)}
        )
        return data["id"]

    async def close(self):
        self.client.session.close()


class StripeGateway(PaymentGatewayAdapter):
    """Stripe PaymentIntents; webhooks carry a timestamped ``Stripe-Signature`` header."""
    provider = PaymentGateway.STRIPE

    SUCCESS_EVENTS = {"payment_intent.succeeded"}
    FAILURE_EVENTS = {"payment_intent.payment_failed"}

    def __init__(self, secret_key: str = config.STRIPE_SECRET_KEY,
                 webhook_secret: str = config.STRIPE_WEBHOOK_SECRET,
                 tolerance: int = config.STRIPE_SIGNATURE_TOLERANCE,
                 currency: str = config.PAYMENT_CURRENCY):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.currency = currency.lower()

    async def _call(self, label: str, fn, **params) -> Any:
        log.info(f"Calling stripe: {label}")
        try:
            return await run_in_threadpool(fn, api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            log.error(f"stripe {label} failed: {e}")
            raise GatewayError(f"stripe request failed: {e.user_message or e}")

    async def create_intent(self, order_id: UUID, amount: Decimal) -> GatewayIntent:
        intent = await self._call(
            "PaymentIntent.create", stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=self.currency,
            metadata={"order_id": str(order_id)},
            automatic_payment_methods={"enabled": True},
        )
        return GatewayIntent(
            intent_id=intent["id"],
            amount_minor=intent["amount"],
            currency=intent["currency"],
            client_secret=intent["client_secret"],
        )

    def verify_and_parse_callback(self, raw_payload: bytes, signature: Optional[str]) -> PaymentCallback:
        if not self.webhook_secret or not signature:
            raise SignatureInvalid("Missing Stripe-Signature header.")
        try:
            stripe.Webhook.construct_event(raw_payload, signature, self.webhook_secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(f"Stripe webhook signature rejected: {e.user_message or e}")
        except ValueError:
            raise ValidationError("Callback payload is not valid JSON.")

        event = _load_json(raw_payload)
        event_type = event.get("type", "")
        intent = (event.get("data") or {}).get("object") or {}
        return PaymentCallback(
            event_type=event_type,
            outcome=_outcome(event_type, self.SUCCESS_EVENTS, self.FAILURE_EVENTS),
            intent_id=intent.get("id"),
            payment_reference=intent.get("id"),
            event_id=event.get("id"),
        )

    async def refund(self, payment_reference: str, amount: Decimal) -> str:
        refund = await self._call(
            "Refund.create", stripe.Refund.create,
            payment_intent=payment_reference,
            amount=to_minor_units(amount),
        )
        return refund["id"]


_GATEWAY_CLASSES = {
    PaymentGateway.RAZORPAY: RazorpayGateway,
    PaymentGateway.STRIPE: StripeGateway,
}
_gateways: Dict[PaymentGateway, PaymentGatewayAdapter] = {}


def get_gateway(provider: PaymentGateway) -> PaymentGatewayAdapter:
    """Returns the shared adapter for ``provider``, building it on first use."""
    provider = PaymentGateway(provider)
    if provider not in _gateways:
        _gateways[provider] = _GATEWAY_CLASSES[provider]()
    return _gateways[provider]


def set_gateway(provider: PaymentGateway, adapter: Optional[PaymentGatewayAdapter]) -> None:
    if adapter is None:
        _gateways.pop(PaymentGateway(provider), None)
    else:
        _gateways[PaymentGateway(provider)] = adapter


async def close_gateways():
    for adapter in list(_gateways.values()):
        await adapter.close()
    _gateways.clear()
