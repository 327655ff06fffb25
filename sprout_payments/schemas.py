from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from sprout_payments import subscriptions


class RazorpayCreateOrderRequest(BaseModel):
    user_id: str
    amount: float
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    currency: Optional[str] = "INR"
    interval: Optional[str] = "month"
    interval_count: Optional[int] = 1
    type: Optional[str] = "subscription"  # subscription, analysis_pack
    quantity: Optional[int] = None
    validity_days: Optional[int] = None


class RazorpayOrderResponse(BaseModel):
    id: str
    amount: int
    currency: str
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    interval: Optional[str] = None
    type: str
    receipt: Optional[str] = None


class RazorpayPaymentVerifyRequest(BaseModel):
    razorpay_payment_id: str
    razorpay_order_id: str
    razorpay_signature: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    interval: Optional[str] = None


class SubscriptionResponse(BaseModel):
    user_id: str
    plan_id: str
    plan_name: Optional[str] = None
    status: str
    provider: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    interval: str
    interval_count: int
    start_date: datetime
    end_date: datetime
    cancel_at_period_end: bool
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SubscriptionStatusResponse(BaseModel):
    hasActiveSubscription: bool
    subscription: Optional[SubscriptionResponse] = None


class PaymentVerifyResponse(BaseModel):
    success: bool
    idempotent: bool
    order_id: str
    order_status: str
    subscription: Optional[SubscriptionResponse] = None


class StripeSubscriptionCheckoutRequest(BaseModel):
    user_id: str
    user_email: str
    plan_id: str
    plan_name: Optional[str] = None
    amount: int  # minor units
    currency: str
    interval: str
    interval_count: Optional[int] = 1


class CheckoutSessionResponse(BaseModel):
    url: Optional[str] = None
    session_id: str


class CancelSubscriptionResponse(BaseModel):
    success: bool
    cancel_at: Optional[datetime] = None
    subscription: Optional[SubscriptionResponse] = None


class AnalysisCreditsResponse(BaseModel):
    total: int
    trial: int
    purchase: int
    total_purchased: int


class ConsumeCreditResponse(BaseModel):
    success: bool
    remaining: int


class TrialGrantResponse(BaseModel):
    granted: bool
    quantity: int
    expires_at: datetime


class PendingOrderResponse(BaseModel):
    provider: str
    provider_order_id: str
    user_id: str
    purchase_type: str
    plan_id: Optional[str] = None
    amount: float
    currency: str
    status: str
    needs_reconciliation: bool = False
    conflicting_payment_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PendingOrdersResponse(BaseModel):
    count: int
    orders: List[PendingOrderResponse]


def subscription_out(subscription) -> Optional[SubscriptionResponse]:
    if subscription is None:
        return None
    response = SubscriptionResponse.model_validate(subscription)
    # Expiry is derived at read time; the stored row may still say active.
    return response.model_copy(update={"status": subscriptions.effective_status(subscription)})
