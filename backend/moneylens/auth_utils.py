import re
import secrets
from typing import Any

LOGIN_PATTERN = re.compile(r"[a-z0-9._-]+")


def normalize_login(value: Any) -> str | None:
    """Return the canonical storage key for a login, or None when it is unusable."""
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if not normalized or not LOGIN_PATTERN.fullmatch(normalized):
        return None
    return normalized


def clean_password(value: Any) -> str | None:
    if value is None:
        return None
    password = str(value).strip()
    return password or None


def password_matches(submitted: str, stored: Any) -> bool:
    # Passwords are kept in plaintext; compare bytes so non-ASCII input is allowed.
    if not isinstance(stored, str):
        return False
    return secrets.compare_digest(submitted.encode("utf-8"), stored.encode("utf-8"))
