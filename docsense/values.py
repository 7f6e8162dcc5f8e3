"""Parsing helpers for typed field values.

Shared by the rule-based extractor, which normalizes what it finds, and the
verifier, which checks that values are well-formed.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

DATE_FORMATS: list[str] = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%Y%m%d",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
]

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^\+?[\d\s\-().]{7,20}$")
ORG_NUMBER_RE = re.compile(r"^(?:\d{2})?\d{6}-?\d{4}$")
IBAN_RE = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{10,30}$")

_TRUE = {"true", "yes", "ja", "y", "j", "x", "1"}
_FALSE = {"false", "no", "nej", "n", "0", ""}


def parse_date(value: Any) -> date | None:
    """Parse a date in any supported format, or return ``None``."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value: Any) -> Decimal | None:
    """Parse a monetary or numeric amount, tolerating currency and separators.

    Handles ``1,234.56``, ``1 234,56``, ``1.234,56``, ``$500.00`` and
    ``500 kr``. Returns ``None`` if no number can be read.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float | Decimal):
        return Decimal(str(value))
    text = re.sub(r"[^\d,.\-]", "", str(value).replace("−", "-"))
    if not text or not re.search(r"\d", text):
        return None

    last_comma, last_dot = text.rfind(","), text.rfind(".")
    if last_comma > last_dot:
        decimals = len(text) - last_comma - 1
        if last_dot == -1 and decimals == 3 and text.count(",") >= 1 and len(text) > 4:
            # "1,234" is a thousands separator, not a decimal comma
            text = text.replace(",", "")
        else:
            text = text.replace(".", "").replace(",", ".")
    else:
        text = text.replace(",", "")
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def format_amount(amount: Decimal) -> str:
    """Render an amount without thousands separators (``1234.50``)."""
    return f"{amount:.2f}"


def normalize_org_number(value: Any) -> str:
    return re.sub(r"[\s]", "", str(value))


def is_valid_email(value: Any) -> bool:
    return bool(EMAIL_RE.match(str(value).strip()))


def is_valid_phone(value: Any) -> bool:
    text = str(value).strip()
    return bool(PHONE_RE.match(text)) and len(re.sub(r"\D", "", text)) >= 7


def is_valid_org_number(value: Any) -> bool:
    return bool(ORG_NUMBER_RE.match(normalize_org_number(value)))


def is_valid_iban(value: Any) -> bool:
    """Check IBAN structure and its ISO 13616 mod-97 checksum."""
    iban = re.sub(r"\s", "", str(value)).upper()
    if not IBAN_RE.match(iban):
        return False
    rearranged = iban[4:] + iban[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(digits) % 97 == 1


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())
