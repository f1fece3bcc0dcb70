from datetime import UTC, datetime


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every audit column."""
    return datetime.now(UTC)


def normalize_email(email: str | None) -> str | None:
    """Strips surrounding whitespace only; emails are matched exactly as stored."""
    if email is None:
        return None
    return email.strip() or None
