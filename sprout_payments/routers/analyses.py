import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from sprout_payments import analysis_credits, schemas
from sprout_payments.auth import AuthenticatedUser, get_current_user
from sprout_payments.config import Settings, get_settings
from sprout_payments.database import get_db
from sprout_payments.dependencies import get_orchestrator
from sprout_payments.orchestrator import PaymentOrchestrator
from sprout_payments.routers.stripe import process_stripe_webhook
from sprout_payments.utils.rate_limiter import enforce_rate_limit

router = APIRouter(tags=["analyses"])
logger = logging.getLogger(__name__)


@router.post("/analyses-purchase", response_model=schemas.CheckoutSessionResponse)
def purchase_analyses(
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    enforce_rate_limit(
        request,
        settings,
        scope="analyses.purchase",
        limit=settings.checkout_rate_limit,
        window_seconds=settings.checkout_rate_window_seconds,
        extra_key=current_user.id,
    )
    return orchestrator.create_analysis_pack_checkout(current_user.id)


@router.post("/analyses-purchase-webhook")
async def analyses_purchase_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await process_stripe_webhook(request, settings, orchestrator)


@router.get("/analysis-credits", response_model=schemas.AnalysisCreditsResponse)
def get_analysis_credits(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return analysis_credits.available_credits(db, current_user.id)


@router.post("/analysis-credits/consume", response_model=schemas.ConsumeCreditResponse)
def consume_analysis_credit(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = analysis_credits.consume_credit(db, current_user.id)
    return schemas.ConsumeCreditResponse(success=True, remaining=result["remaining"])


@router.post("/analysis-credits/trial", response_model=schemas.TrialGrantResponse)
def grant_trial_credits(
    current_user: AuthenticatedUser = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    purchase, created = analysis_credits.grant_trial(
        db,
        current_user.id,
        quantity=settings.trial_analysis_quantity,
        validity_days=settings.trial_validity_days,
    )
    return schemas.TrialGrantResponse(granted=created, quantity=purchase.quantity, expires_at=purchase.expires_at)
