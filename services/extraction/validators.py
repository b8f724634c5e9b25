"""Pure validation and normalization helpers shared by every extractor."""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

# RFC: 3 letters (legal entity) or 4 letters (individual), YYMMDD, 3-char homoclave
TAX_ID_PATTERN = r"[A-ZÑ&]{3,4}\d{6}[A-Z0-9]{3}"
FOLIO_PATTERN = r"[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}"

_TAX_ID_RE = re.compile(rf"^{TAX_ID_PATTERN}$")
_FOLIO_RE = re.compile(rf"^{FOLIO_PATTERN}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

_DATE_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")


def normalize_tax_id(raw: Any) -> str | None:
    """Uppercase and strip separators. Returns None for empty input."""
    if raw is None:
        return None
    value = re.sub(r"[\s\-.]", "", str(raw)).upper()
    return value or None


def is_valid_tax_id(value: str | None) -> bool:
    return value is not None and _TAX_ID_RE.match(value) is not None


def normalize_folio(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip().upper()
    return value or None


def is_valid_folio(value: str | None) -> bool:
    return value is not None and _FOLIO_RE.match(value) is not None


def normalize_currency(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip().upper()
    return value if _CURRENCY_RE.match(value) else None


def parse_amount(raw: Any) -> Decimal | None:
    """Parse a monetary amount such as '$1,234.56' or 1234.56.

    Returns:
        Decimal amount, or None if the input is not a number
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        amount = raw
    elif isinstance(raw, int | float):
        amount = Decimal(str(raw))
    else:
        cleaned = re.sub(r"[\s$,]", "", str(raw))
        if cleaned.upper().startswith("MXN"):
            cleaned = cleaned[3:]
        if not cleaned:
            return None
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    return amount if amount.is_finite() else None


def parse_issue_date(raw: Any) -> datetime | None:
    """Parse an issue date.

    Supports ISO 8601 (the CFDI 'Fecha' attribute, e.g. 2025-10-03T11:59:17),
    DD/MM/YYYY and DD-MM-YYYY. Timezone information is dropped since CFDI
    dates are expressed in the issuer's local time.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.replace(tzinfo=None)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day)

    text = str(raw).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text).replace(tzinfo=None)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text[:10], fmt)
        except ValueError:
            continue
    return None


def clamp_confidence(raw: Any) -> float:
    """Clamp a service-reported score into [0, 1]. Non-numeric scores become 0."""
    try:
        score = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return min(1.0, max(0.0, score))
