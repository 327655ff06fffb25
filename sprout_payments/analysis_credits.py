"""Analysis credit ledger.

Packs are additive: every verified purchase inserts its own row. Credits are
spent from the unexpired row that expires first, and a row never has more
credits used than it granted.
"""
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sprout_payments import models
from sprout_payments.errors import InsufficientCredits, StorageError, ValidationError

logger = logging.getLogger(__name__)

PACK = "pack"
TRIAL = "trial"
ANALYSIS_PACK_TYPE = "analysis_pack"


def trial_reference(user_id: str) -> str:
    return f"trial:{user_id}"


def get_purchase_by_reference(db: Session, provider_payment_intent_id: str) -> models.AnalysisPurchase | None:
    return (
        db.query(models.AnalysisPurchase)
        .filter(models.AnalysisPurchase.provider_payment_intent_id == provider_payment_intent_id)
        .first()
    )


def _insert_purchase(db: Session, purchase: models.AnalysisPurchase, commit: bool) -> models.AnalysisPurchase:
    db.add(purchase)
    try:
        if commit:
            db.commit()
            db.refresh(purchase)
        else:
            db.flush()
    except IntegrityError:
        # A concurrent delivery inserted the same payment reference first.
        db.rollback()
        existing = get_purchase_by_reference(db, purchase.provider_payment_intent_id)
        if existing is None:
            raise StorageError(
                "Failed to record analysis purchase",
                details={"reference": purchase.provider_payment_intent_id},
            )
        return existing
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Analysis purchase insert failed reference=%s error=%s",
            purchase.provider_payment_intent_id,
            exc,
        )
        raise StorageError("DB insert error", details={"reference": purchase.provider_payment_intent_id})
    return purchase


def grant_pack(
    db: Session,
    *,
    user_id: str,
    quantity: int,
    amount_paid: int | None,
    provider_payment_intent_id: str,
    validity_days: int,
    metadata_type: str | None = ANALYSIS_PACK_TYPE,
    now: datetime | None = None,
    commit: bool = True,
) -> tuple[models.AnalysisPurchase, bool]:
    """Insert a pack row. Returns ``(purchase, created)``.

    The payment reference is unique, so the same payment never grants twice.
    """
    if metadata_type != ANALYSIS_PACK_TYPE:
        raise ValidationError(
            "Purchase is not an analysis pack.",
            details={"type": metadata_type},
        )
    if not user_id or not provider_payment_intent_id:
        raise ValidationError(
            "user_id and payment reference are required.",
            details={"user_id": user_id, "reference": provider_payment_intent_id},
        )
    if int(quantity or 0) <= 0 or int(validity_days or 0) <= 0:
        raise ValidationError(
            "quantity and validity_days must be positive.",
            details={"quantity": quantity, "validity_days": validity_days},
        )

    existing = get_purchase_by_reference(db, provider_payment_intent_id)
    if existing is not None:
        logger.info("Analysis pack already granted reference=%s user_id=%s", provider_payment_intent_id, user_id)
        return existing, False

    start = now or models.utcnow()
    purchase = models.AnalysisPurchase(
        user_id=user_id,
        purchase_type=PACK,
        quantity=int(quantity),
        used_count=0,
        amount_paid=amount_paid,
        provider_payment_intent_id=provider_payment_intent_id,
        expires_at=start + timedelta(days=int(validity_days)),
        created_at=start,
    )
    stored = _insert_purchase(db, purchase, commit)
    created = stored is purchase
    if created:
        logger.info(
            "Analysis pack granted user_id=%s quantity=%s reference=%s expires_at=%s",
            user_id,
            quantity,
            provider_payment_intent_id,
            stored.expires_at,
        )
    return stored, created


def grant_trial(
    db: Session,
    user_id: str,
    quantity: int,
    validity_days: int,
    now: datetime | None = None,
) -> tuple[models.AnalysisPurchase, bool]:
    reference = trial_reference(user_id)
    existing = get_purchase_by_reference(db, reference)
    if existing is not None:
        return existing, False

    start = now or models.utcnow()
    purchase = models.AnalysisPurchase(
        user_id=user_id,
        purchase_type=TRIAL,
        quantity=int(quantity),
        used_count=0,
        amount_paid=0,
        provider_payment_intent_id=reference,
        expires_at=start + timedelta(days=int(validity_days)),
        created_at=start,
    )
    stored = _insert_purchase(db, purchase, commit=True)
    created = stored is purchase
    if created:
        logger.info("Trial analyses granted user_id=%s quantity=%s", user_id, quantity)
    return stored, created


def _consumable_rows(db: Session, user_id: str, now: datetime) -> list[models.AnalysisPurchase]:
    return (
        db.query(models.AnalysisPurchase)
        .filter(
            models.AnalysisPurchase.user_id == user_id,
            models.AnalysisPurchase.expires_at > now,
            models.AnalysisPurchase.used_count < models.AnalysisPurchase.quantity,
        )
        .order_by(models.AnalysisPurchase.expires_at.asc(), models.AnalysisPurchase.id.asc())
        .all()
    )


def available_credits(db: Session, user_id: str, now: datetime | None = None) -> dict[str, int]:
    current = now or models.utcnow()
    rows = (
        db.query(models.AnalysisPurchase)
        .filter(
            models.AnalysisPurchase.user_id == user_id,
            models.AnalysisPurchase.expires_at > current,
        )
        .all()
    )
    trial = sum(max(row.quantity - row.used_count, 0) for row in rows if row.purchase_type == TRIAL)
    purchase = sum(max(row.quantity - row.used_count, 0) for row in rows if row.purchase_type != TRIAL)
    total_purchased = (
        db.query(func.coalesce(func.sum(models.AnalysisPurchase.quantity), 0))
        .filter(
            models.AnalysisPurchase.user_id == user_id,
            models.AnalysisPurchase.purchase_type == PACK,
        )
        .scalar()
    )
    return {
        "total": trial + purchase,
        "trial": trial,
        "purchase": purchase,
        "total_purchased": int(total_purchased or 0),
    }


def consume_credit(db: Session, user_id: str, now: datetime | None = None) -> dict[str, Any]:
    """Spend one credit. Raises ``InsufficientCredits`` when nothing unexpired is left."""
    current = now or models.utcnow()
    for row in _consumable_rows(db, user_id, current):
        # Conditional increment; a concurrent spender that got there first leaves rowcount at 0.
        updated = (
            db.query(models.AnalysisPurchase)
            .filter(
                models.AnalysisPurchase.id == row.id,
                models.AnalysisPurchase.used_count < models.AnalysisPurchase.quantity,
            )
            .update(
                {models.AnalysisPurchase.used_count: models.AnalysisPurchase.used_count + 1},
                synchronize_session=False,
            )
        )
        if not updated:
            continue
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Credit consumption failed user_id=%s purchase_id=%s error=%s", user_id, row.id, exc)
            raise StorageError("Failed to consume analysis credit", details={"user_id": user_id})
        db.expire_all()
        remaining = available_credits(db, user_id, current)["total"]
        logger.info("Analysis credit consumed user_id=%s purchase_id=%s remaining=%s", user_id, row.id, remaining)
        return {"purchase_id": row.id, "remaining": remaining}

    raise InsufficientCredits(details={"user_id": user_id})
