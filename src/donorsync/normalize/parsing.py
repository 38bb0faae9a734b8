"""
Data-quality-safe parsing helpers shared by all vendor mappers.

None of these raise on bad vendor data. Missing IDs get a fallback token,
unparsable dates pass through verbatim, invalid numbers become None. Each
substitution is logged as a data-quality warning.
"""

from __future__ import annotations

import logging
import math
import random
import re
import string
import time
from collections.abc import Mapping
from typing import Any

from donorsync.contracts import DonationStatus, DonationType, Provider

logger = logging.getLogger(__name__)

_ISO_DATE_PREFIX = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_BASE36 = string.digits + string.ascii_lowercase


def safe_parse_number(value: Any) -> float | None:
    """Parse a number; None for empty, invalid, NaN or infinite input."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            num = float(value)
        except OverflowError:
            return None
    else:
        text = str(value).strip().replace(",", "").lstrip("$")
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def safe_parse_positive_number(value: Any) -> float | None:
    """Like safe_parse_number, but negative values are also None."""
    num = safe_parse_number(value)
    return num if num is not None and num >= 0 else None


def safe_parse_int(value: Any) -> int | None:
    num = safe_parse_number(value)
    return int(num) if num is not None else None


def parse_amount(value: Any) -> float:
    """Donation amount: 0 when absent or invalid, never negative."""
    num = safe_parse_number(value)
    if num is None:
        if value not in (None, ""):
            logger.warning("Unparseable donation amount, defaulting to 0")
        return 0.0
    return max(num, 0.0)


def _random_suffix(length: int = 6) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def safe_external_id(value: Any, prefix: str) -> str:
    """Vendor ID as a string, or ``<prefix>-unknown-<ms>-<random>`` if missing."""
    if value is None or (isinstance(value, str) and not value.strip()):
        fallback = f"{prefix}-unknown-{int(time.time() * 1000)}-{_random_suffix()}"
        logger.warning(
            "Missing external ID, generating fallback",
            extra={"prefix": prefix, "fallback_id": fallback},
        )
        return fallback
    return str(value).strip()


def safe_parse_date(value: Any) -> str | None:
    """
    Coerce a vendor date to ``YYYY-MM-DD``.

    Accepts ISO strings (any ``YYYY-MM-DD...`` prefix) and ``MM/DD/YYYY``.
    Anything else non-empty is returned verbatim with a warning.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None

    match = _ISO_DATE_PREFIX.match(text)
    if match:
        month, day = int(match.group(2)), int(match.group(3))
        if 1 <= month <= 12 and 1 <= day <= 31:
            return match.group(0)

    parts = text.split("/")
    if len(parts) == 3:
        try:
            month, day, year = (int(part) for part in parts)
        except ValueError:
            pass
        else:
            if 1 <= month <= 12 and 1 <= day <= 31 and 1900 <= year <= 2100:
                return f"{year:04d}-{month:02d}-{day:02d}"

    logger.warning("Unparseable date format", extra={"value": text[:40]})
    return text


def is_valid_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def clean_string(value: Any) -> str | None:
    """Trimmed string, or None for empty and non-string values."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value.strip() if is_valid_string(value) else None


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def build_full_name(
    first_name: str | None,
    last_name: str | None,
    fallback: str | None = None,
) -> str:
    """Join first/last names; fall back to an org name or "Unknown"."""
    parts = [p.strip() for p in (first_name, last_name) if is_valid_string(p)]
    if parts:
        return " ".join(parts)  # type: ignore[arg-type]
    if is_valid_string(fallback):
        return fallback.strip()  # type: ignore[union-attr]
    return "Unknown"


# Vendor vocabulary (lowercased) -> canonical donation type
_DONATION_TYPES: dict[str, DonationType] = {
    "donation": DonationType.ONE_TIME,
    "gift": DonationType.ONE_TIME,
    "one-time": DonationType.ONE_TIME,
    "one time": DonationType.ONE_TIME,
    "onetime": DonationType.ONE_TIME,
    "cash": DonationType.ONE_TIME,
    "pledge": DonationType.PLEDGE,
    "pledgepayment": DonationType.PLEDGE_PAYMENT,
    "pledge payment": DonationType.PLEDGE_PAYMENT,
    "pledge-payment": DonationType.PLEDGE_PAYMENT,
    "recurring": DonationType.RECURRING,
    "recurringgift": DonationType.RECURRING,
    "recurring gift": DonationType.RECURRING,
    "recurringgiftpayment": DonationType.RECURRING,
    "recurring gift payment": DonationType.RECURRING,
    "recurringdonation": DonationType.RECURRING,
    "recurringdonationpayment": DonationType.RECURRING,
    "grant": DonationType.GRANT,
    "stock": DonationType.STOCK,
    "stock/property": DonationType.STOCK,
    "securities": DonationType.STOCK,
    "in-kind": DonationType.IN_KIND,
    "in kind": DonationType.IN_KIND,
    "inkind": DonationType.IN_KIND,
    "gift-in-kind": DonationType.IN_KIND,
}

# Vendor vocabulary (lowercased) -> canonical donation status
_DONATION_STATUSES: dict[str, DonationStatus] = {
    "posted": DonationStatus.COMPLETED,
    "approved": DonationStatus.COMPLETED,
    "completed": DonationStatus.COMPLETED,
    "complete": DonationStatus.COMPLETED,
    "succeeded": DonationStatus.COMPLETED,
    "success": DonationStatus.COMPLETED,
    "paid": DonationStatus.COMPLETED,
    "closed won": DonationStatus.COMPLETED,
    "not posted": DonationStatus.PENDING,
    "pending": DonationStatus.PENDING,
    "processing": DonationStatus.PENDING,
    "declined": DonationStatus.DECLINED,
    "rejected": DonationStatus.DECLINED,
    "failed": DonationStatus.DECLINED,
    "refunded": DonationStatus.REFUNDED,
    "refund": DonationStatus.REFUNDED,
    "reversed": DonationStatus.REVERSED,
    "voided": DonationStatus.REVERSED,
    "void": DonationStatus.REVERSED,
    "cancelled": DonationStatus.REVERSED,
    "canceled": DonationStatus.REVERSED,
}


def map_donation_type(value: Any) -> DonationType:
    """Map a vendor gift type onto the controlled vocabulary (OTHER if unknown)."""
    if not is_valid_string(value):
        return DonationType.ONE_TIME if value is None else DonationType.OTHER
    return _DONATION_TYPES.get(value.strip().lower(), DonationType.OTHER)


def map_donation_status(value: Any) -> DonationStatus:
    """Map a vendor gift status onto the controlled vocabulary (UNKNOWN if unknown)."""
    if not is_valid_string(value):
        return DonationStatus.UNKNOWN
    return _DONATION_STATUSES.get(value.strip().lower(), DonationStatus.UNKNOWN)


def namespace_custom_fields(
    provider: Provider | str,
    fields: Mapping[str, Any],
) -> dict[str, Any]:
    """
    Preserve unmapped vendor fields under ``<provider>_<field>``.

    Only None values are dropped; falsy values like 0 and "" are kept.
    """
    prefix = Provider(provider).value
    return {
        key if key.startswith(f"{prefix}_") else f"{prefix}_{key}": value
        for key, value in fields.items()
        if value is not None
    }
