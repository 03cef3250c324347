from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from schoolauth.service.errors import ValidationError
from schoolauth.storage.models import Role

EMAIL_MAX_LENGTH = 255
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PASSWORD_SPECIALS = '!@#$%^&*(),.?":{}|<>'

PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters with uppercase, lowercase, number, "
    "and special character"
)

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._]+$")
_PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{6,14}$")
_PHONE_NOISE = re.compile(r"[\s\-()]")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_REPEATED_DOTS = re.compile(r"\.+")


def is_valid_email(email: Optional[str]) -> bool:
    if not email or len(email) > EMAIL_MAX_LENGTH:
        return False
    return bool(_EMAIL_PATTERN.match(email))


def is_strong_password(password: Optional[str]) -> bool:
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        return False
    if len(password) > PASSWORD_MAX_LENGTH:
        return False
    return (
        any(c.islower() for c in password)
        and any(c.isupper() for c in password)
        and any(c.isdigit() for c in password)
        and any(c in PASSWORD_SPECIALS for c in password)
    )


def normalize_email(email: Optional[str]) -> str:
    """Trim and lowercase an email, raising ``ValidationError`` when malformed."""
    candidate = (email or "").strip().lower()
    if not is_valid_email(candidate):
        raise ValidationError("Please provide a valid email address", detail={"field": "email"})
    return candidate


def require_strong_password(password: Optional[str], *, field: str = "password") -> str:
    if not is_strong_password(password):
        raise ValidationError(PASSWORD_POLICY_MESSAGE, detail={"field": field})
    return password  # type: ignore[return-value]


def is_valid_name(name: Optional[str]) -> bool:
    if not name:
        return False
    return NAME_MIN_LENGTH <= len(name.strip()) <= NAME_MAX_LENGTH


def is_valid_phone(phone: Optional[str]) -> bool:
    """Phone numbers are optional; spaces, dashes and parentheses are ignored."""
    if not phone:
        return True
    return bool(_PHONE_PATTERN.match(_PHONE_NOISE.sub("", phone)))


def is_valid_username(username: Optional[str]) -> bool:
    if not username:
        return False
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        return False
    return bool(_USERNAME_PATTERN.match(username))


def parse_role(role: Optional[str]) -> Role:
    if role is None or role == "":
        return Role.STUDENT
    try:
        return Role(str(role).lower())
    except ValueError:
        allowed = ", ".join(r.value for r in Role)
        raise ValidationError(
            f"Role must be one of: {allowed}", detail={"field": "role"}
        ) from None


@dataclass(frozen=True)
class ParsedName:
    first_name: str
    last_name: str
    username_base: str


def _slug(value: str) -> str:
    dotted = _NON_ALNUM.sub(".", value.lower())
    return _REPEATED_DOTS.sub(".", dotted).strip(".")


def parse_full_name(full_name: Optional[str], email: str, now: datetime) -> ParsedName:
    """Split a display name and derive a ``first.last`` username candidate.

    Falls back to the email local part, then to ``user.<epoch millis>``
    when the derived candidate is shorter than the minimum length.
    """
    email_local = email.split("@", 1)[0]
    if not full_name or not full_name.strip():
        base = _slug(email_local) or "user"
        return ParsedName("", "", base[:USERNAME_MAX_LENGTH])

    parts = full_name.split()
    first_name = parts[0]
    last_name = " ".join(parts[1:])

    base = _slug(f"{first_name} {last_name}")
    if len(base) < USERNAME_MIN_LENGTH:
        fallback = _slug(email_local)
        if len(fallback) >= USERNAME_MIN_LENGTH:
            base = fallback
        else:
            base = f"user.{int(now.timestamp() * 1000)}"
    # leave room for a ".N" uniqueness suffix
    base = base[: USERNAME_MAX_LENGTH - 4].strip(".")
    return ParsedName(first_name, last_name, base)


def unique_username(base: str, exists: Callable[[str], bool], *, max_attempts: int = 1000) -> str:
    """Return ``base`` or the first free ``base.N``."""
    for attempt in range(max_attempts):
        candidate = base if attempt == 0 else f"{base}.{attempt}"
        if not exists(candidate):
            return candidate
    raise ValidationError("Unable to allocate a unique username", detail={"base": base})
