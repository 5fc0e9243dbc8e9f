"""Identifier and address normalization for platform data."""

import re
from datetime import datetime, timezone
from typing import Optional

# Platform user ids are long decimal strings (e.g. "108506371856200018714").
LONG_NUMERIC_ID_RE = re.compile(r"^\d{15,}$")
_TRAILING_DIGITS_RE = re.compile(r"(\d+)$")


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def extract_email_domain(email: Optional[str]) -> Optional[str]:
    """
    Extract lowercased email domain.

    Expects a normalized email, but will normalize if needed.
    """
    normalized = normalize_email(email)
    if not normalized or "@" not in normalized:
        return None
    return normalized.split("@", 1)[1] or None


def email_local_part(email: Optional[str]) -> Optional[str]:
    """Return the part before "@", or None when there is nothing usable."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    local = normalized.split("@", 1)[0]
    return local or None


def canonical_user_id(value: Optional[str]) -> Optional[str]:
    """
    Canonical key for a platform user reference.

    "users/123" and "123" name the same user; the last path segment is kept.
    """
    if not value:
        return None
    value = value.strip()
    if "/" in value:
        value = value.rsplit("/", 1)[1]
    return value or None


def numeric_suffix(value: Optional[str]) -> Optional[str]:
    """Trailing run of digits, e.g. "users/123" -> "123"."""
    if not value:
        return None
    match = _TRAILING_DIGITS_RE.search(value.strip())
    return match.group(1) if match else None


def is_long_numeric_id(value: Optional[str]) -> bool:
    return bool(value and LONG_NUMERIC_ID_RE.match(value))


def short_user_label(external_user_id: Optional[str]) -> str:
    """Human label for an unresolved id: "User " + first 8 characters."""
    canonical = canonical_user_id(external_user_id) or "unknown"
    return f"User {canonical[:8]}"


_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_remote_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Fractions beyond microseconds (the platform sends nanoseconds) are truncated.
    """
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00").replace("z", "+00:00")
    text = _FRACTION_RE.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_remote_timestamp(value: datetime) -> str:
    """RFC 3339 UTC form with microseconds, as accepted by list filters."""
    return as_utc(value).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
