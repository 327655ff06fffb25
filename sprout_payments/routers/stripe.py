import json
import logging
from typing import Any, Optional

import pydantic
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from sprout_payments import schemas, subscriptions
from sprout_payments.auth import AuthenticatedUser, get_optional_user
from sprout_payments.config import Settings, get_settings
from sprout_payments.database import get_db
from sprout_payments.dependencies import get_orchestrator, get_stripe_gateway
from sprout_payments.errors import AuthError, ValidationError
from sprout_payments.orchestrator import PaymentOrchestrator
from sprout_payments.providers.stripe_gateway import StripeGateway
from sprout_payments.signatures import verify_stripe_webhook
from sprout_payments.utils.rate_limiter import enforce_rate_limit

router = APIRouter(tags=["stripe"])
logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_HEADER = "stripe-signature"


async def process_stripe_webhook(
    request: Request,
    settings: Settings,
    orchestrator: PaymentOrchestrator,
) -> dict[str, Any]:
    enforce_rate_limit(
        request,
        settings,
        scope="stripe.webhook",
        limit=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
    )
    body = await request.body()
    event = verify_stripe_webhook(body, request.headers.get(STRIPE_SIGNATURE_HEADER), settings.stripe_webhook_secret)
    logger.info("Stripe webhook received type=%s event_id=%s", event.event_type, event.event_id)
    return orchestrator.handle_stripe_event(event)


async def _parse_checkout_request(request: Request) -> schemas.StripeSubscriptionCheckoutRequest:
    try:
        data = json.loads((await request.body()).decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid JSON body")
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON body")
    try:
        return schemas.StripeSubscriptionCheckoutRequest.model_validate(data)
    except pydantic.ValidationError as exc:
        missing = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        raise ValidationError("Missing or invalid request fields", details={"fields": missing})


@router.post("/stripe-create-checkout-session")
async def create_checkout_session(
    request: Request,
    settings: Settings = Depends(get_settings),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    # Stripe posts its events to this same function; the signature header tells them apart.
    if request.headers.get(STRIPE_SIGNATURE_HEADER):
        return await process_stripe_webhook(request, settings, orchestrator)

    payload = await _parse_checkout_request(request)
    enforce_rate_limit(
        request,
        settings,
        scope="stripe.create_checkout",
        limit=settings.checkout_rate_limit,
        window_seconds=settings.checkout_rate_window_seconds,
        extra_key=payload.user_id,
    )
    return orchestrator.create_stripe_subscription_checkout(
        user_id=payload.user_id,
        user_email=payload.user_email,
        plan_id=payload.plan_id,
        plan_name=payload.plan_name,
        amount=payload.amount,
        currency=payload.currency,
        interval=payload.interval,
        interval_count=payload.interval_count,
    )


@router.post("/stripe-webhook")
@router.post("/stripe-webhook-public")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await process_stripe_webhook(request, settings, orchestrator)


@router.post("/stripe-cancel-subscription", response_model=schemas.CancelSubscriptionResponse)
def cancel_subscription(
    userId: Optional[str] = None,
    current_user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
):
    user_id = current_user.id if current_user else (userId or "").strip()
    if not user_id:
        raise AuthError("No authorization token or userId provided")

    result = subscriptions.cancel_at_period_end(db, stripe_gateway, user_id)
    return schemas.CancelSubscriptionResponse(
        success=True,
        cancel_at=result["cancel_at"],
        subscription=schemas.subscription_out(result["subscription"]),
    )
