"""
Utility functions for the reply service.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from replyhub.errors import ValidationError

logger = logging.getLogger(__name__)

COUNTRY_CODE = "55"

_NON_DIGITS = re.compile(r"\D")


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the way timestamps are stored)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Optional[Any]) -> Optional[datetime]:
    """
    Parse an ISO-8601 value into a naive UTC datetime.

    Accepts datetimes, 'Z'-suffixed strings and offset-aware strings.
    Returns None for empty input; raises ValidationError for garbage.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"invalid date: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def clamp_non_negative(value: Any, default: int) -> int:
    """
    Coerce a pagination value to a non-negative integer.

    Non-numeric input falls back to default; negative numbers clamp to 0.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(number, 0)


def normalize_phone_number(phone_number: str) -> str:
    """
    Normalize a phone number to the gateway format (digits, country code first).

    Strips every non-digit and prepends the country code when the result
    does not already start with it, so applying it twice is a no-op:
    "21999999999" -> "5521999999999".
    """
    digits = _NON_DIGITS.sub("", phone_number or "")
    if not digits:
        raise ValidationError(f"phone number has no digits: {phone_number!r}")
    if not digits.startswith(COUNTRY_CODE):
        digits = COUNTRY_CODE + digits
        logger.debug(f"Prepended country code {COUNTRY_CODE} to phone number")
    return digits


def mask_secret(value: Optional[str], visible: int = 5) -> str:
    """Show only the first few characters of a secret for diagnostics."""
    if not value:
        return "NOT_SET"
    return value[:visible] + "***"

