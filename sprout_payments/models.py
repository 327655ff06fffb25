from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from sprout_payments.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String, nullable=False, index=True)  # razorpay, stripe
    provider_order_id = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    purchase_type = Column(String, nullable=False, default="subscription")
    plan_id = Column(String, nullable=True)
    plan_name = Column(String, nullable=True)
    amount = Column(Float, nullable=False)
    amount_minor = Column(Integer, nullable=True)
    currency = Column(String, nullable=False, default="INR")
    interval = Column(String, nullable=True)
    interval_count = Column(Integer, nullable=False, default=1)
    quantity = Column(Integer, nullable=True)
    validity_days = Column(Integer, nullable=True)
    receipt = Column(String, nullable=True)
    status = Column(String, nullable=False, default="created", index=True)  # created, completed, failed
    provider_payment_id = Column(String, nullable=True, unique=True)
    provider_signature = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    # Set when a verified payment could not be applied to this order.
    needs_reconciliation = Column(Boolean, nullable=False, default=False, index=True)
    conflicting_payment_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    # One row per user; renewals and upgrades update it in place.
    user_id = Column(String, nullable=False, unique=True, index=True)
    provider = Column(String, nullable=True)
    provider_subscription_id = Column(String, nullable=True, index=True)
    plan_id = Column(String, nullable=False)
    plan_name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # active, canceled, expired
    amount = Column(Float, nullable=True)
    currency = Column(String, nullable=True)
    interval = Column(String, nullable=False, default="month")
    interval_count = Column(Integer, nullable=False, default=1)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class AnalysisPurchase(Base):
    __tablename__ = "analysis_purchases"
    __table_args__ = (Index("ix_analysis_purchases_user_expiry", "user_id", "expires_at"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    purchase_type = Column(String, nullable=False, default="pack")  # pack, trial
    quantity = Column(Integer, nullable=False)
    used_count = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Integer, nullable=True)
    provider_payment_intent_id = Column(String, nullable=True, unique=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=True, index=True)
    stripe_customer_id = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
