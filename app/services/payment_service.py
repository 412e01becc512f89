import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from uuid import UUID
from tortoise import timezone
from tortoise.transactions import in_transaction
from app.core.db import conditional_update
from app.core.errors import (
    InvalidTransition,
    PaymentNotRequired,
    RefundNotEligible,
    ValidationError,
)
from app.core.locks import order_locks
from app.events.outbox_utility import emit_order_event
from app.models.order import Order, OrderStatus, PaymentAttempt, PaymentGateway, PaymentMethod, PaymentStatus
from app.services.gateways import CallbackOutcome, PaymentCallback, get_gateway
from app.services.order_service import load_order, parse_choice
from app.services.state_machine import can_transition_payment

log = logging.getLogger("payment_service")


def _payment_view(order: Order, **extra) -> Dict[str, Any]:
    view = {
        "order_id": str(order.id),
        "payment_status": order.payment_status.value,
        "provider": order.payment_gateway.value if order.payment_gateway else None,
        "intent_id": order.payment_intent_id,
        "amount": str(order.total),
    }
    view.update(extra)
    return view


async def create_payment_intent(order_id: UUID, provider) -> Dict[str, Any]:
    """
    Opens a charge intent with the gateway. Repeating the call while the payment
    is ``processing`` returns the existing intent instead of charging twice, and
    a retry after a failed attempt on the same provider reopens the same intent.
    A gateway failure leaves the payment ``pending``.
    """
    provider = parse_choice(PaymentGateway, provider, "payment provider")

    async with order_locks.hold(order_id):
        order = await load_order(order_id)
        if order.payment_method == PaymentMethod.CASH:
            raise PaymentNotRequired("Cash-on-delivery orders do not use a payment gateway.")
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransition("Cannot take payment for a cancelled order.")
        if order.payment_status == PaymentStatus.PROCESSING and order.payment_intent_id:
            log.info(f"Order {order.id} already has intent {order.payment_intent_id}; reusing it.")
            return _payment_view(order, created=False)
        if not can_transition_payment(order.payment_status, PaymentStatus.PROCESSING):
            raise InvalidTransition(f"Payment is already {order.payment_status.value}.")

        if order.payment_status == PaymentStatus.FAILED and order.payment_gateway == provider:
            # Gateways accept further attempts on a failed intent.
            async with in_transaction() as conn:
                order = await load_order(order_id, conn)
                await conditional_update(order, conn, payment_status=PaymentStatus.PROCESSING)
            log.info(f"Order {order.id}: retrying payment on intent {order.payment_intent_id}.")
            return _payment_view(order, created=False)

        intent = await get_gateway(provider).create_intent(order.id, order.total)

        async with in_transaction() as conn:
            order = await load_order(order_id, conn)
            await conditional_update(
                order, conn,
                payment_status=PaymentStatus.PROCESSING,
                payment_gateway=provider,
                payment_intent_id=intent.intent_id,
            )
            await PaymentAttempt.create(order_id=order.id, provider=provider, intent_id=intent.intent_id, using_db=conn)

    log.info(f"Order {order.id}: {provider.value} intent {intent.intent_id} created.")
    return _payment_view(order, created=True, client_secret=intent.client_secret, currency=intent.currency)


async def _apply_callback(order_id: UUID, provider: PaymentGateway, callback: PaymentCallback) -> Dict[str, Any]:
    async with order_locks.hold(order_id):
        async with in_transaction() as conn:
            order = await load_order(order_id, conn)
            current = order.payment_status

            if current in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
                if callback.outcome == CallbackOutcome.SUCCEEDED and callback.intent_id != order.payment_intent_id:
                    log.error(f"Order {order.id}: second capture on intent {callback.intent_id} after settling "
                              f"{order.payment_intent_id}; refund it at the gateway.")
                else:
                    log.info(f"Order {order.id}: payment already {current.value}; callback {callback.event_type} is a no-op.")
                return _payment_view(order, received=True, applied=False)

            if callback.outcome == CallbackOutcome.SUCCEEDED and can_transition_payment(current, PaymentStatus.COMPLETED):
                # The settling intent may be an earlier one than the order's current intent.
                await conditional_update(
                    order, conn,
                    payment_status=PaymentStatus.COMPLETED,
                    payment_gateway=provider,
                    payment_intent_id=callback.intent_id,
                    payment_reference=callback.payment_reference or order.payment_reference,
                    paid_at=timezone.now(),
                )
                await emit_order_event(order, "payment.completed.v1", conn=conn, amount=str(order.total))
            elif (callback.outcome == CallbackOutcome.FAILED
                  and callback.intent_id == order.payment_intent_id
                  and can_transition_payment(current, PaymentStatus.FAILED)):
                await conditional_update(order, conn, payment_status=PaymentStatus.FAILED)
                await emit_order_event(order, "payment.failed.v1", conn=conn)
            else:
                log.warning(f"Order {order.id}: ignoring {callback.outcome.value} callback for intent "
                            f"{callback.intent_id} while payment is {current.value}.")
                return _payment_view(order, received=True, applied=False)

    log.info(f"Order {order.id}: payment {current.value} -> {order.payment_status.value}.")
    return _payment_view(order, received=True, applied=True)


async def _find_attempt(provider: PaymentGateway, intent_id: str) -> Optional[PaymentAttempt]:
    return await PaymentAttempt.get_or_none(provider=provider, intent_id=intent_id)


async def handle_payment_callback(provider, raw_payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Verifies and applies a gateway webhook. Verification happens before any
    lookup; re-delivered callbacks for settled payments are acknowledged as no-ops.
    """
    provider = parse_choice(PaymentGateway, provider, "payment provider")
    callback = get_gateway(provider).verify_and_parse_callback(raw_payload, signature)

    if callback.outcome == CallbackOutcome.IGNORED or not callback.intent_id:
        log.info(f"{provider.value} event {callback.event_type} acknowledged without action.")
        return {"received": True, "applied": False}

    attempt = await _find_attempt(provider, callback.intent_id)
    if not attempt:
        log.warning(f"{provider.value} callback for unknown intent {callback.intent_id}.")
        return {"received": True, "applied": False}
    return await _apply_callback(attempt.order_id, provider, callback)


async def verify_checkout(order_id: UUID, gateway_order_id: str, payment_id: str, signature: str) -> Dict[str, Any]:
    """Razorpay client-side checkout confirmation, signed with the key secret."""
    gateway = get_gateway(PaymentGateway.RAZORPAY)
    gateway.verify_checkout_signature(gateway_order_id, payment_id, signature)

    order = await load_order(order_id)
    attempt = await _find_attempt(PaymentGateway.RAZORPAY, gateway_order_id)
    if not attempt or attempt.order_id != order.id:
        raise ValidationError("Checkout does not belong to this order's payment intents.")
    callback = PaymentCallback(
        event_type="checkout.verified",
        outcome=CallbackOutcome.SUCCEEDED,
        intent_id=gateway_order_id,
        payment_reference=payment_id,
    )
    return await _apply_callback(order.id, PaymentGateway.RAZORPAY, callback)


async def refund_payment(order_id: UUID, amount=None) -> Dict[str, Any]:
    """Refunds a completed payment, by default in full."""
    async with order_locks.hold(order_id):
        order = await load_order(order_id)
        if order.payment_status != PaymentStatus.COMPLETED:
            raise RefundNotEligible(f"Cannot refund a payment that is {order.payment_status.value}.")
        if order.payment_gateway is None:
            raise RefundNotEligible("Only gateway payments can be refunded.")

        if amount is None:
            refund_amount = order.total
        else:
            try:
                refund_amount = Decimal(str(amount)).quantize(Decimal("0.01"))
            except (InvalidOperation, ValueError):
                raise ValidationError(f"Invalid refund amount: {amount!r}.")
        if not Decimal("0") < refund_amount <= order.total:
            raise ValidationError(f"Refund amount must be between 0 and {order.total}.")

        gateway = get_gateway(order.payment_gateway)
        refund_id = await gateway.refund(order.payment_reference or order.payment_intent_id, refund_amount)

        async with in_transaction() as conn:
            order = await load_order(order_id, conn)
            await conditional_update(
                order, conn,
                payment_status=PaymentStatus.REFUNDED,
                refunded_at=timezone.now(),
                refund_amount=refund_amount,
            )
            await emit_order_event(order, "payment.refunded.v1", conn=conn, amount=str(refund_amount), refund_id=refund_id)

    log.info(f"Order {order.id}: refunded {refund_amount} ({refund_id}).")
    return _payment_view(order, refund_amount=str(refund_amount), refund_id=refund_id)
