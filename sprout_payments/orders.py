import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sprout_payments import models
from sprout_payments.database import supports_row_locks
from sprout_payments.errors import OrderStateConflict, StorageError
from sprout_payments.providers.razorpay import RazorpayClient, RazorpayOrderRequest

logger = logging.getLogger(__name__)

ORDER_CREATED = "created"
ORDER_COMPLETED = "completed"
ORDER_FAILED = "failed"

PURCHASE_SUBSCRIPTION = "subscription"
PURCHASE_ANALYSIS_PACK = "analysis_pack"
PURCHASE_TYPES = {PURCHASE_SUBSCRIPTION, PURCHASE_ANALYSIS_PACK}


def get_order(db: Session, provider_order_id: str, lock: bool = False) -> models.Order | None:
    query = db.query(models.Order).filter(models.Order.provider_order_id == provider_order_id)
    if lock and supports_row_locks(db):
        query = query.with_for_update()
    return query.first()


def record_created_order(db: Session, *, commit: bool = True, **fields) -> models.Order:
    """Persist a ``created`` order row.

    If the provider order id is already recorded (for example a webhook
    rebuilt the row first) the existing row is returned unchanged.
    """
    provider_order_id = fields["provider_order_id"]
    existing = get_order(db, provider_order_id)
    if existing:
        return existing

    order = models.Order(status=ORDER_CREATED, **fields)
    db.add(order)
    try:
        if commit:
            db.commit()
            db.refresh(order)
        else:
            db.flush()
    except IntegrityError:
        db.rollback()
        existing = get_order(db, provider_order_id)
        if existing:
            return existing
        raise StorageError("Failed to record order", details={"provider_order_id": provider_order_id})
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Order insert failed provider_order_id=%s error=%s", provider_order_id, exc)
        raise StorageError("DB insert error", details={"provider_order_id": provider_order_id})
    return order


def create_razorpay_order(
    db: Session,
    razorpay: RazorpayClient,
    order_request: RazorpayOrderRequest,
    *,
    user_id: str,
    purchase_type: str,
    amount: float,
    plan_id: str | None = None,
    plan_name: str | None = None,
    interval: str | None = None,
    interval_count: int = 1,
    quantity: int | None = None,
    validity_days: int | None = None,
) -> models.Order:
    # Provider errors (including timeouts) propagate before anything is persisted.
    provider_order = razorpay.create_order(order_request)
    logger.info(
        "Razorpay order created order_id=%s user_id=%s type=%s amount_minor=%s",
        provider_order["id"],
        user_id,
        purchase_type,
        provider_order.get("amount"),
    )
    return record_created_order(
        db,
        provider="razorpay",
        provider_order_id=provider_order["id"],
        user_id=user_id,
        purchase_type=purchase_type,
        plan_id=plan_id,
        plan_name=plan_name,
        amount=amount,
        amount_minor=int(provider_order.get("amount") or order_request.amount_minor),
        currency=str(provider_order.get("currency") or order_request.currency),
        interval=interval,
        interval_count=interval_count,
        quantity=quantity,
        validity_days=validity_days,
        receipt=order_request.receipt,
    )


def ensure_completable(order: models.Order, provider_payment_id: str) -> bool:
    """Returns False when this payment was already applied; raises on any other terminal state."""
    if order.status == ORDER_COMPLETED:
        if order.provider_payment_id == provider_payment_id:
            return False
        raise OrderStateConflict(
            "Order is already linked to a different payment.",
            details={"order_id": order.provider_order_id, "payment_id": provider_payment_id},
        )
    if order.status == ORDER_FAILED:
        raise OrderStateConflict(
            "Order was marked failed; manual reconciliation required.",
            details={"order_id": order.provider_order_id, "payment_id": provider_payment_id},
        )
    return True


def mark_completed(
    order: models.Order,
    provider_payment_id: str,
    provider_signature: str,
) -> bool:
    """Move ``created`` to ``completed``. Returns False when the same payment was already applied."""
    if not ensure_completable(order, provider_payment_id):
        return False

    order.status = ORDER_COMPLETED
    order.provider_payment_id = provider_payment_id
    order.provider_signature = provider_signature
    order.error_message = None
    order.needs_reconciliation = False
    order.conflicting_payment_id = None
    return True


def _commit_order(db: Session, order: models.Order, failure_message: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Order update failed order_id=%s error=%s", order.provider_order_id, exc)
        raise StorageError(failure_message, details={"order_id": order.provider_order_id})


def mark_failed(db: Session, order: models.Order, reason: str, commit: bool = True) -> bool:
    """Move ``created`` to ``failed``. Returns False when it was already failed."""
    if order.status == ORDER_FAILED:
        return False
    if order.status == ORDER_COMPLETED:
        raise OrderStateConflict(
            "Completed order cannot be marked failed.",
            details={"order_id": order.provider_order_id},
        )

    order.status = ORDER_FAILED
    order.error_message = (reason or "")[:1000]
    if commit:
        _commit_order(db, order, "Failed to update order status")
    return True


def record_failed_attempt(db: Session, order: models.Order, provider_payment_id: str, reason: str) -> bool:
    """Note a declined payment attempt on an open order.

    Razorpay lets the customer retry on the same order, so the order stays
    ``created``. Returns False when nothing changed.
    """
    if order.status != ORDER_CREATED:
        return False
    message = f"{provider_payment_id}: {reason or 'payment failed'}"[:1000]
    if order.error_message == message:
        return False
    order.error_message = message
    _commit_order(db, order, "Failed to record payment attempt")
    return True


def flag_for_reconciliation(db: Session, order: models.Order, provider_payment_id: str, reason: str) -> None:
    """Keep a verified payment that could not be applied visible to reconciliation."""
    order.needs_reconciliation = True
    order.conflicting_payment_id = provider_payment_id
    order.error_message = (reason or "")[:1000]
    _commit_order(db, order, "Failed to flag order for reconciliation")


def list_needing_reconciliation(
    db: Session,
    older_than: timedelta,
    now: datetime | None = None,
    provider: str | None = None,
) -> list[models.Order]:
    """Stale ``created`` orders plus any order flagged with an unapplied verified payment."""
    cutoff = (now or models.utcnow()) - older_than
    query = db.query(models.Order).filter(
        or_(
            and_(models.Order.status == ORDER_CREATED, models.Order.created_at < cutoff),
            models.Order.needs_reconciliation.is_(True),
        )
    )
    if provider:
        query = query.filter(models.Order.provider == provider)
    return query.order_by(models.Order.created_at.asc()).all()
