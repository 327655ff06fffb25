import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from sprout_payments import models
from sprout_payments.database import supports_row_locks
from sprout_payments.errors import NotFound, ValidationError
from sprout_payments.providers.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_EXPIRED = "expired"

SUPPORTED_INTERVALS = {"day", "week", "month", "year"}


def normalize_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if getattr(value, "tzinfo", None):
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp to the last day of a shorter month (Jan 31 + 1 month -> Feb 28/29).
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_end_date(start: datetime, interval: str, interval_count: int = 1) -> datetime:
    normalized = (interval or "month").strip().lower()
    count = int(interval_count or 1)
    if count <= 0:
        raise ValidationError("interval_count must be positive.", details={"interval_count": interval_count})
    if normalized == "year":
        return _add_months(start, 12 * count)
    if normalized == "month":
        return _add_months(start, count)
    if normalized == "week":
        return start + timedelta(weeks=count)
    if normalized == "day":
        return start + timedelta(days=count)
    raise ValidationError("Unsupported billing interval.", details={"interval": interval})


def get_user_subscription(db: Session, user_id: str, lock: bool = False) -> models.Subscription | None:
    query = db.query(models.Subscription).filter(models.Subscription.user_id == user_id)
    if lock and supports_row_locks(db):
        query = query.with_for_update()
    return query.first()


def get_by_provider_subscription_id(db: Session, provider_subscription_id: str) -> models.Subscription | None:
    return (
        db.query(models.Subscription)
        .filter(models.Subscription.provider_subscription_id == provider_subscription_id)
        .first()
    )


def activate_or_renew(
    db: Session,
    *,
    user_id: str,
    plan_id: str,
    plan_name: str | None,
    amount: float | None,
    currency: str | None,
    interval: str,
    interval_count: int = 1,
    provider: str | None = None,
    provider_subscription_id: str | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> models.Subscription:
    """Upsert the user's single subscription row.

    The period always starts at ``now``; re-applying the same payment yields
    the same end date rather than stacking another period on top.
    """
    start = now or models.utcnow()
    end = compute_end_date(start, interval, interval_count)

    subscription = get_user_subscription(db, user_id, lock=True)
    if subscription is None:
        subscription = models.Subscription(user_id=user_id)
        db.add(subscription)
        logger.info("Subscription created user_id=%s plan_id=%s", user_id, plan_id)
    else:
        logger.info(
            "Subscription renewed user_id=%s plan_id=%s previous_plan_id=%s",
            user_id,
            plan_id,
            subscription.plan_id,
        )

    subscription.plan_id = plan_id
    subscription.plan_name = plan_name
    subscription.status = STATUS_ACTIVE
    subscription.amount = amount
    subscription.currency = currency
    subscription.interval = (interval or "month").strip().lower()
    subscription.interval_count = int(interval_count or 1)
    subscription.start_date = start
    subscription.end_date = end
    subscription.cancel_at_period_end = False
    if provider:
        subscription.provider = provider
    if provider_subscription_id:
        subscription.provider_subscription_id = provider_subscription_id

    if commit:
        db.commit()
        db.refresh(subscription)
    else:
        db.flush()
    return subscription


def is_entitled(subscription: models.Subscription | None, now: datetime | None = None) -> bool:
    if subscription is None:
        return False
    end_date = normalize_datetime(subscription.end_date)
    return subscription.status == STATUS_ACTIVE and end_date is not None and end_date > (now or models.utcnow())


def effective_status(subscription: models.Subscription, now: datetime | None = None) -> str:
    if subscription.status == STATUS_ACTIVE and not is_entitled(subscription, now):
        return STATUS_EXPIRED
    return subscription.status


def get_status(db: Session, user_id: str, now: datetime | None = None) -> dict[str, Any]:
    subscription = get_user_subscription(db, user_id)
    has_active = is_entitled(subscription, now)
    return {
        "has_active_subscription": has_active,
        "subscription": subscription if has_active else None,
    }


def _epoch_to_datetime(value: Any) -> datetime | None:
    try:
        timestamp = int(value or 0)
    except (TypeError, ValueError):
        return None
    if timestamp <= 0:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def cancel_at_period_end(db: Session, stripe_gateway: StripeGateway, user_id: str) -> dict[str, Any]:
    """Ask the provider to stop renewing. Local access stays active until ``end_date``."""
    subscription = get_user_subscription(db, user_id, lock=True)
    if subscription is None:
        raise NotFound("No subscription found for this user.", details={"user_id": user_id})
    if not subscription.provider_subscription_id or subscription.provider != "stripe":
        raise NotFound("No provider subscription found for this user.", details={"user_id": user_id})

    result = stripe_gateway.cancel_at_period_end(subscription.provider_subscription_id)
    cancel_at = _epoch_to_datetime(result.get("cancel_at")) or normalize_datetime(subscription.end_date)

    subscription.cancel_at_period_end = True
    db.commit()
    db.refresh(subscription)
    logger.info(
        "Subscription set to cancel at period end user_id=%s subscription_id=%s cancel_at=%s",
        user_id,
        subscription.provider_subscription_id,
        cancel_at,
    )
    return {"cancel_at": cancel_at, "subscription": subscription}


def mark_canceled(db: Session, provider_subscription_id: str, commit: bool = True) -> models.Subscription | None:
    subscription = get_by_provider_subscription_id(db, provider_subscription_id)
    if subscription is None:
        return None
    subscription.status = STATUS_CANCELED
    subscription.cancel_at_period_end = True
    if commit:
        db.commit()
        db.refresh(subscription)
    else:
        db.flush()
    return subscription
