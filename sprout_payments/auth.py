import logging
from dataclasses import dataclass
from typing import Optional

import requests
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from sprout_payments.config import Settings, get_settings
from sprout_payments.errors import AuthError, ProviderError, ProviderNotConfiguredError

logger = logging.getLogger(__name__)

SUPABASE_JWT_ALGORITHM = "HS256"
SUPABASE_JWT_AUDIENCE = "authenticated"

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def _decode_local(token: str, secret: str) -> AuthenticatedUser:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[SUPABASE_JWT_ALGORITHM],
            audience=SUPABASE_JWT_AUDIENCE,
        )
    except JWTError:
        raise AuthError("Invalid or expired token")
    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid or expired token")
    return AuthenticatedUser(id=str(user_id), email=payload.get("email"))


def _fetch_remote(token: str, settings: Settings) -> AuthenticatedUser:
    """Ask the identity provider who the token belongs to."""
    try:
        response = requests.get(
            f"{settings.supabase_url}/auth/v1/user",
            headers={"Authorization": f"Bearer {token}", "apikey": settings.supabase_anon_key},
            timeout=settings.provider_timeout_seconds,
        )
    except requests.RequestException as exc:
        logger.error("Identity provider request failed error=%s", exc)
        raise ProviderError("Failed to contact identity provider", provider="supabase")

    if response.status_code in (401, 403):
        raise AuthError("Invalid or expired token")
    if response.status_code >= 400:
        raise ProviderError(
            "Identity provider request failed",
            details={"status": response.status_code},
            provider="supabase",
        )
    try:
        payload = response.json()
    except ValueError:
        raise ProviderError("Invalid response received from identity provider.", provider="supabase")

    user_id = payload.get("id") if isinstance(payload, dict) else None
    if not user_id:
        raise AuthError("Invalid or expired token")
    return AuthenticatedUser(id=str(user_id), email=payload.get("email"))


def resolve_user(token: str, settings: Settings) -> AuthenticatedUser:
    if not token:
        raise AuthError("No authorization token provided")
    if settings.supabase_jwt_secret:
        return _decode_local(token, settings.supabase_jwt_secret)
    if settings.supabase_url:
        return _fetch_remote(token, settings)
    raise ProviderNotConfiguredError("Authentication is not configured.", provider="supabase")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    if credentials is None or not credentials.credentials:
        raise AuthError("No authorization token provided")
    return resolve_user(credentials.credentials, settings)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> Optional[AuthenticatedUser]:
    if credentials is None or not credentials.credentials:
        return None
    return resolve_user(credentials.credentials, settings)
