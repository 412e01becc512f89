from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field
from app.models.order import PaymentGateway


class PaymentIntentRequest(BaseModel):
    provider: PaymentGateway


class CheckoutVerifyRequest(BaseModel):
    """Razorpay checkout handshake posted by the client after payment."""
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, description="Defaults to the full order total.")
