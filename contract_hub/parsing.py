"""
Locale-aware parsing of values returned by the contract details service.

The analysis service returns dates, money and durations as human-formatted
strings in the language of the contract, for example:
- "20 Februari 2025"
- "Rp 4.338.283.000,00"
- "365 hari kalender"

Supported locales are listed explicitly in LOCALES. A value that matches none
of the supported formats raises a typed ParseError subclass; callers decide
whether to skip the field or fail, nothing here falls back to "now" or zero.
"""

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, Optional
import re

from contract_hub.errors import UnparseableCurrency, UnparseableDate, UnparseableDuration


@dataclass(frozen=True)
class LocaleRules:
    """Formatting rules for one locale."""
    code: str
    months: Dict[str, int]
    thousands_sep: str
    decimal_sep: str
    day_units: tuple
    month_units: tuple
    year_units: tuple


_ID_MONTHS = {
    "januari": 1, "februari": 2, "maret": 3, "april": 4, "mei": 5, "juni": 6,
    "juli": 7, "agustus": 8, "september": 9, "oktober": 10, "november": 11, "desember": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "agu": 8, "agt": 8,
    "sep": 9, "okt": 10, "nov": 11, "des": 12,
}

_EN_MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}

LOCALES: Dict[str, LocaleRules] = {
    "id": LocaleRules(
        code="id",
        months=_ID_MONTHS,
        thousands_sep=".",
        decimal_sep=",",
        day_units=("hari",),
        month_units=("bulan",),
        year_units=("tahun",),
    ),
    "en": LocaleRules(
        code="en",
        months=_EN_MONTHS,
        thousands_sep=",",
        decimal_sep=".",
        day_units=("day", "days"),
        month_units=("month", "months"),
        year_units=("year", "years"),
    ),
}

DEFAULT_LOCALE = "id"

# Currency markers stripped before numeric parsing
CURRENCY_MARKER_RX = re.compile(r"(?i)(?:\brp\.?|\bidr|\busd|\$)")

# "5.000.000,-" is a common way of writing a round amount
TRAILING_DASH_RX = re.compile(r"[.,]-+$")

DAY_MONTH_YEAR_RX = re.compile(r"^(\d{1,2})\s+([A-Za-z]+)\.?\s+(\d{4})$")
MONTH_DAY_YEAR_RX = re.compile(r"^([A-Za-z]+)\.?\s+(\d{1,2}),?\s+(\d{4})$")
NUMERIC_DATE_RX = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})$")
ISO_DATE_RX = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")

DURATION_RX = re.compile(r"(\d+(?:[.,]\d+)?)\s*([A-Za-z]+)?")

DAYS_PER_MONTH = 30


def _locales(locale: Optional[str]) -> Iterable[LocaleRules]:
    """Yield the requested locale first, then the remaining supported ones."""
    if locale is not None:
        if locale not in LOCALES:
            raise ValueError(f"Unsupported locale '{locale}'. Supported: {sorted(LOCALES)}")
        yield LOCALES[locale]
    for code, rules in LOCALES.items():
        if code != locale:
            yield rules


def _build_date(year: int, month: int, day: int, raw: str) -> date:
    try:
        return date(year, month, day)
    except ValueError as e:
        raise UnparseableDate(raw, f"Invalid calendar date {raw!r}: {e}") from e


def parse_date(value: Optional[str], locale: Optional[str] = DEFAULT_LOCALE) -> date:
    """
    Parse a locale-formatted date string.

    Accepted shapes:
    - "20 Februari 2025" / "20 February 2025" (month name in any supported locale)
    - "February 20, 2025"
    - "20/02/2025", "20-02-2025", "20.02.2025" (day first)
    - "2025-02-20" and full ISO timestamps

    Args:
        value: Raw date string from the analysis service
        locale: Locale whose month names are tried first

    Returns:
        date: Parsed calendar date

    Raises:
        UnparseableDate: If the value matches none of the supported formats
    """
    if value is None or not str(value).strip():
        raise UnparseableDate(str(value), "Empty date value")

    raw = str(value).strip()

    iso = ISO_DATE_RX.match(raw)
    if iso:
        return _build_date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)), raw)

    numeric = NUMERIC_DATE_RX.match(raw)
    if numeric:
        return _build_date(int(numeric.group(3)), int(numeric.group(2)), int(numeric.group(1)), raw)

    day_first = DAY_MONTH_YEAR_RX.match(raw)
    month_first = MONTH_DAY_YEAR_RX.match(raw)
    if day_first:
        day, month_name, year = day_first.group(1), day_first.group(2), day_first.group(3)
    elif month_first:
        month_name, day, year = month_first.group(1), month_first.group(2), month_first.group(3)
    else:
        raise UnparseableDate(raw)

    for rules in _locales(locale):
        month = rules.months.get(month_name.lower())
        if month:
            return _build_date(int(year), month, int(day), raw)

    raise UnparseableDate(raw, f"Unknown month name {month_name!r} in {raw!r}")


def parse_currency(value, locale: str = DEFAULT_LOCALE) -> Decimal:
    """
    Parse a locale-formatted money amount into a Decimal.

    Example:
        >>> parse_currency("Rp 4.338.283.000,00")
        Decimal('4338283000.00')
        >>> parse_currency("$1,250.50", locale="en")
        Decimal('1250.50')

    Args:
        value: Raw amount string (numbers are passed through)
        locale: Locale deciding which character groups thousands and which marks decimals

    Raises:
        UnparseableCurrency: If the value is not a well-formed amount for the locale
    """
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value))

    if value is None or not str(value).strip():
        raise UnparseableCurrency(str(value), "Empty currency value")

    if locale not in LOCALES:
        raise ValueError(f"Unsupported locale '{locale}'. Supported: {sorted(LOCALES)}")
    rules = LOCALES[locale]

    raw = str(value)
    cleaned = CURRENCY_MARKER_RX.sub("", raw)
    cleaned = re.sub(r"\s+", "", cleaned)
    cleaned = TRAILING_DASH_RX.sub("", cleaned)

    t = re.escape(rules.thousands_sep)
    d = re.escape(rules.decimal_sep)
    grouped = rf"^-?\d{{1,3}}(?:{t}\d{{3}})+(?:{d}\d+)?$"
    plain = rf"^-?\d+(?:{d}\d+)?$"
    if not (re.match(grouped, cleaned) or re.match(plain, cleaned)):
        raise UnparseableCurrency(raw)

    normalized = cleaned.replace(rules.thousands_sep, "").replace(rules.decimal_sep, ".")
    try:
        return Decimal(normalized)
    except InvalidOperation as e:
        raise UnparseableCurrency(raw) from e


def parse_duration_months(value, locale: Optional[str] = DEFAULT_LOCALE) -> int:
    """
    Convert a duration string into whole months.

    "365 hari kalender" -> 12, "18 bulan" -> 18, "2 tahun" -> 24, "6 months" -> 6.
    A number without a recognised unit is read as days, which is how the
    contract details service reports calendar durations.

    Raises:
        UnparseableDuration: If no number can be found in the value
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value

    if value is None or not str(value).strip():
        raise UnparseableDuration(str(value), "Empty duration value")

    raw = str(value).strip()
    match = DURATION_RX.search(raw)
    if not match:
        raise UnparseableDuration(raw)

    amount = Decimal(match.group(1).replace(",", "."))
    unit = (match.group(2) or "").lower()

    for rules in _locales(locale):
        if unit in rules.month_units:
            return int(amount)
        if unit in rules.year_units:
            return int(amount * 12)
        if unit in rules.day_units:
            break

    return int((amount / DAYS_PER_MONTH).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
