import logging
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Header, HTTPException, Request, status
from app.core.errors import CoordinatorError
from app.models.order import PaymentGateway
from app.schemas.payment import CheckoutVerifyRequest, PaymentIntentRequest, RefundRequest
from app.schemas.response import SuccessResponse
from app.services.payment_service import (
    create_payment_intent,
    handle_payment_callback,
    refund_payment,
    verify_checkout,
)

router = APIRouter()
log = logging.getLogger("uvicorn")


@router.post("/orders/{order_id}/intent", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_intent_endpoint(order_id: UUID, payload: PaymentIntentRequest):
    """Opens (or returns the already open) gateway intent for the order."""
    try:
        data = await create_payment_intent(order_id, payload.provider)
        return SuccessResponse(data=data)
    except CoordinatorError:
        raise
    except Exception as e:
        log.error(f"Error creating payment intent for order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to create payment intent.")


@router.post("/webhooks/{provider}", response_model=SuccessResponse)
async def webhook_endpoint(
    provider: PaymentGateway,
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    stripe_signature: Optional[str] = Header(None),
):
    """
    Gateway callback. The signature is computed over the raw body, so the body
    is read as bytes and never re-serialized before verification.
    """
    raw_body = await request.body()
    signature = x_razorpay_signature if provider == PaymentGateway.RAZORPAY else stripe_signature
    data = await handle_payment_callback(provider, raw_body, signature)
    return SuccessResponse(data=data)


@router.post("/orders/{order_id}/verify", response_model=SuccessResponse)
async def verify_checkout_endpoint(order_id: UUID, payload: CheckoutVerifyRequest):
    data = await verify_checkout(
        order_id, payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature
    )
    return SuccessResponse(data=data, message="Payment verified.")


@router.post("/orders/{order_id}/refund", response_model=SuccessResponse)
async def refund_endpoint(order_id: UUID, payload: RefundRequest):
    try:
        data = await refund_payment(order_id, payload.amount)
        return SuccessResponse(data=data, message="Refund issued.")
    except CoordinatorError as e:
        log.warning(f"Refund rejected for order {order_id}: {e.message}")
        raise
    except Exception as e:
        log.error(f"Error refunding order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to refund payment.")
