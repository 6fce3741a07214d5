import re
import secrets
import string
from datetime import datetime, timezone
from typing import Optional

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def storage_safe_timestamp(moment: datetime) -> str:
    """
    Renders an ISO-8601 timestamp usable inside an object key.
    ':' and '.' are replaced with hyphens, e.g.
    2025-01-15T10:00:00.000Z -> 2025-01-15T10-00-00-000Z
    """
    moment = to_aware_utc(moment)
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"
    return re.sub(r"[:.]", "-", iso)


def random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))
