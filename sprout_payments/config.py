import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _is_truthy(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_set(raw: str) -> frozenset[str]:
    return frozenset(item.strip() for item in (raw or "").split(",") if item.strip())


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or "").strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./sprout_payments.db"
    debug: bool = False

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_base: str = "https://api.razorpay.com/v1"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_jwt_secret: str = ""

    provider_timeout_seconds: float = 4.0
    checkout_success_url: str = "https://sprout-app.com/payment/success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_url: str = "https://sprout-app.com/payment/cancel"

    analysis_pack_name: str = "10 Plant Analyses"
    analysis_pack_description: str = "One-time purchase of 10 plant identification analyses"
    analysis_pack_quantity: int = 10
    analysis_pack_amount: int = 9900
    analysis_pack_currency: str = "inr"
    analysis_pack_validity_days: int = 30
    trial_analysis_quantity: int = 5
    trial_validity_days: int = 14

    reconciliation_stale_minutes: int = 30
    admin_api_key: str = ""

    rate_limit_backend: str = "database"
    trust_proxy_headers: bool = False
    trusted_proxy_ips: frozenset[str] = field(default_factory=frozenset)
    checkout_rate_limit: int = 20
    checkout_rate_window_seconds: int = 900
    verify_rate_limit: int = 30
    verify_rate_window_seconds: int = 900
    webhook_rate_limit: int = 240
    webhook_rate_window_seconds: int = 60


def load_settings() -> Settings:
    return Settings(
        database_url=_env_str("DATABASE_URL", "sqlite:///./sprout_payments.db"),
        debug=_is_truthy(os.getenv("DEBUG", "false")),
        razorpay_key_id=_env_str("RAZORPAY_KEY_ID"),
        razorpay_key_secret=_env_str("RAZORPAY_KEY_SECRET"),
        razorpay_webhook_secret=_env_str("RAZORPAY_WEBHOOK_SECRET"),
        razorpay_api_base=_env_str("RAZORPAY_API_BASE", "https://api.razorpay.com/v1").rstrip("/"),
        stripe_secret_key=_env_str("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env_str("STRIPE_WEBHOOK_SECRET"),
        supabase_url=_env_str("SUPABASE_URL").rstrip("/"),
        supabase_anon_key=_env_str("SUPABASE_ANON_KEY"),
        supabase_jwt_secret=_env_str("SUPABASE_JWT_SECRET"),
        provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 4.0),
        checkout_success_url=_env_str("CHECKOUT_SUCCESS_URL", Settings.checkout_success_url),
        checkout_cancel_url=_env_str("CHECKOUT_CANCEL_URL", Settings.checkout_cancel_url),
        analysis_pack_quantity=_env_int("ANALYSIS_PACK_QUANTITY", 10),
        analysis_pack_amount=_env_int("ANALYSIS_PACK_AMOUNT", 9900),
        analysis_pack_currency=_env_str("ANALYSIS_PACK_CURRENCY", "inr").lower() or "inr",
        analysis_pack_validity_days=_env_int("ANALYSIS_PACK_VALIDITY_DAYS", 30),
        trial_analysis_quantity=_env_int("TRIAL_ANALYSIS_QUANTITY", 5),
        trial_validity_days=_env_int("TRIAL_VALIDITY_DAYS", 14),
        reconciliation_stale_minutes=_env_int("RECONCILIATION_STALE_MINUTES", 30),
        admin_api_key=_env_str("ADMIN_API_KEY"),
        rate_limit_backend=_env_str("RATE_LIMIT_BACKEND", "database").lower() or "database",
        trust_proxy_headers=_is_truthy(os.getenv("TRUST_PROXY_HEADERS", "false")),
        trusted_proxy_ips=_parse_csv_set(os.getenv("TRUSTED_PROXY_IPS", "")),
        checkout_rate_limit=_env_int("CHECKOUT_RATE_LIMIT", 20),
        checkout_rate_window_seconds=_env_int("CHECKOUT_RATE_WINDOW_SECONDS", 900),
        verify_rate_limit=_env_int("VERIFY_RATE_LIMIT", 30),
        verify_rate_window_seconds=_env_int("VERIFY_RATE_WINDOW_SECONDS", 900),
        webhook_rate_limit=_env_int("WEBHOOK_RATE_LIMIT", 240),
        webhook_rate_window_seconds=_env_int("WEBHOOK_RATE_WINDOW_SECONDS", 60),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
