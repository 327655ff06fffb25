from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEY_PARTS = (
    "authorization",
    "api_key",
    "apikey",
    "secret",
    "signature",
    "token",
    "password",
)


def _is_sensitive(key: Any) -> bool:
    normalized = str(key).strip().lower().replace("-", "_")
    return any(part in normalized for part in SENSITIVE_KEY_PARTS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive mapping values replaced by the redaction marker."""
    if isinstance(value, dict):
        return {
            key: (REDACTED if _is_sensitive(key) and item not in (None, "") else redact(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact(item) for item in value)
    return value


def redact_headers(headers) -> dict[str, str]:
    return redact({key: value for key, value in headers.items()})
