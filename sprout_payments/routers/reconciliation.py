import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header

from sprout_payments import schemas
from sprout_payments.config import Settings, get_settings
from sprout_payments.dependencies import get_orchestrator
from sprout_payments.errors import AuthError, ProviderNotConfiguredError
from sprout_payments.orchestrator import PaymentOrchestrator

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_api_key:
        raise ProviderNotConfiguredError("Admin access is not configured.")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode("utf-8"), settings.admin_api_key.encode("utf-8")):
        raise AuthError("Invalid admin key")


@router.get(
    "/pending-orders",
    response_model=schemas.PendingOrdersResponse,
    dependencies=[Depends(require_admin_key)],
)
def pending_orders(
    older_than_minutes: Optional[int] = None,
    provider: Optional[str] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    rows = orchestrator.pending_orders(older_than_minutes=older_than_minutes, provider=provider)
    return schemas.PendingOrdersResponse(
        count=len(rows),
        orders=[schemas.PendingOrderResponse.model_validate(row) for row in rows],
    )
