import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from sprout_payments import schemas, subscriptions
from sprout_payments.config import Settings, get_settings
from sprout_payments.database import get_db
from sprout_payments.dependencies import get_orchestrator
from sprout_payments.errors import ValidationError, VerificationError
from sprout_payments.orchestrator import PaymentOrchestrator
from sprout_payments.signatures import verify_razorpay_webhook
from sprout_payments.utils.rate_limiter import enforce_rate_limit
from sprout_payments.utils.redaction import redact_headers

router = APIRouter(tags=["razorpay"])
logger = logging.getLogger(__name__)


@router.post("/razorpay-create-order", response_model=schemas.RazorpayOrderResponse)
@router.post("/razorpay/create-order", response_model=schemas.RazorpayOrderResponse)
def create_order(
    payload: schemas.RazorpayCreateOrderRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    enforce_rate_limit(
        request,
        settings,
        scope="razorpay.create_order",
        limit=settings.checkout_rate_limit,
        window_seconds=settings.checkout_rate_window_seconds,
        extra_key=payload.user_id,
    )
    order = orchestrator.create_razorpay_checkout(
        user_id=payload.user_id,
        amount=payload.amount,
        currency=payload.currency,
        purchase_type=payload.type,
        plan_id=payload.plan_id,
        plan_name=payload.plan_name,
        interval=payload.interval,
        interval_count=payload.interval_count,
        quantity=payload.quantity,
        validity_days=payload.validity_days,
    )
    return schemas.RazorpayOrderResponse(
        id=order.provider_order_id,
        amount=order.amount_minor,
        currency=order.currency,
        plan_id=order.plan_id,
        plan_name=order.plan_name,
        interval=order.interval,
        type=order.purchase_type,
        receipt=order.receipt,
    )


@router.post("/razorpay/verify-payment", response_model=schemas.PaymentVerifyResponse)
@router.post("/razorpay-verify-payment", response_model=schemas.PaymentVerifyResponse)
def verify_payment(
    payload: schemas.RazorpayPaymentVerifyRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    enforce_rate_limit(
        request,
        settings,
        scope="razorpay.verify_payment",
        limit=settings.verify_rate_limit,
        window_seconds=settings.verify_rate_window_seconds,
        extra_key=payload.razorpay_order_id,
    )
    result = orchestrator.verify_razorpay_payment(
        order_id=payload.razorpay_order_id,
        payment_id=payload.razorpay_payment_id,
        signature=payload.razorpay_signature,
        user_id=payload.user_id,
    )
    return schemas.PaymentVerifyResponse(
        success=True,
        idempotent=result.idempotent,
        order_id=result.order.provider_order_id,
        order_status=result.order.status,
        subscription=schemas.subscription_out(result.subscription),
    )


@router.get("/razorpay-subscription-status", response_model=schemas.SubscriptionStatusResponse)
@router.get("/razorpay/subscription-status", response_model=schemas.SubscriptionStatusResponse)
def subscription_status(user_id: Optional[str] = None, db: Session = Depends(get_db)):
    if not user_id:
        raise ValidationError("Missing user_id parameter")
    status = subscriptions.get_status(db, user_id)
    return schemas.SubscriptionStatusResponse(
        hasActiveSubscription=status["has_active_subscription"],
        subscription=schemas.subscription_out(status["subscription"]),
    )


@router.post("/razorpay/webhook")
async def razorpay_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    enforce_rate_limit(
        request,
        settings,
        scope="razorpay.webhook",
        limit=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
    )
    # Signature is checked over the raw bytes, never a re-serialized body.
    body = await request.body()
    try:
        event = verify_razorpay_webhook(
            body,
            request.headers.get("X-Razorpay-Signature"),
            settings.razorpay_webhook_secret,
            event_id=request.headers.get("X-Razorpay-Event-Id"),
        )
    except VerificationError:
        logger.warning("Razorpay webhook rejected headers=%s", redact_headers(request.headers))
        raise
    logger.info("Razorpay webhook received event=%s event_id=%s", event.event_type, event.event_id)
    return orchestrator.handle_razorpay_webhook(event)
