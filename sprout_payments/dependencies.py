from fastapi import Depends
from sqlalchemy.orm import Session

from sprout_payments.config import Settings, get_settings
from sprout_payments.database import get_db
from sprout_payments.orchestrator import PaymentOrchestrator
from sprout_payments.providers.razorpay import RazorpayClient
from sprout_payments.providers.stripe_gateway import StripeGateway


def get_razorpay_client(settings: Settings = Depends(get_settings)) -> RazorpayClient:
    return RazorpayClient(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        api_base=settings.razorpay_api_base,
        timeout=settings.provider_timeout_seconds,
    )


def get_stripe_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway(api_key=settings.stripe_secret_key, timeout=settings.provider_timeout_seconds)


def get_orchestrator(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    razorpay: RazorpayClient = Depends(get_razorpay_client),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db=db, settings=settings, razorpay=razorpay, stripe_gateway=stripe_gateway)
