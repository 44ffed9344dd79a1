"""Normalization functions for audit CSV ingestion.

All functions accept str | None and return the appropriate type or None.
An empty or whitespace-only field is always "absent" (None), never 0 or
False, so partial-field exports cannot overwrite real data with zeros.
"""

from __future__ import annotations

import re
import unicodedata
import urllib.parse
from datetime import date, datetime

NUMBER_LOCALES = ("us", "eu")

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%Y%m%d",
)
_TS_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
)
_SENTINEL_TS = ("0000-00-00", "0000-00-00 00:00:00")
_NUMBER_NOISE = re.compile(r"[\s %$€£]")
_NUMBER_SHAPE = re.compile(r"[+-]?[\d.,]*\d[\d.,]*")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def normalize_header(value: str) -> str:
    """Header cell → comparable label (BOM, stray quotes and NFC differences removed)."""
    v = value.replace("\ufeff", "").strip().strip("\"'").strip()
    return unicodedata.normalize("NFC", v)


# ---------------------------------------------------------------------------
# Rule 2: parse_number  (US and EU formats)
# ---------------------------------------------------------------------------

def _resolve_separator(v: str, sep: str, locale: str) -> str:
    """Canonicalize a number that contains only one kind of separator."""
    head, _, tail = v.rpartition(sep)
    if v.count(sep) > 1:
        # Repeated separator can only be grouping.
        return v.replace(sep, "")
    if len(tail) != 3 or head.lstrip("+-") in ("", "0"):
        # "0,339" / "15,5" / ",5": not a thousands group.
        return v.replace(sep, ".")
    # Exactly three trailing digits ("1,234", "93,300"): ambiguous.
    locale_decimal = "," if locale == "eu" else "."
    if sep == locale_decimal:
        return v.replace(sep, ".")
    return v.replace(sep, "")


def parse_number(value: str | None, locale: str = "us") -> float | None:
    """Parse a locale-formatted number, returning None on failure.

    "1.234,56" and "1234.56" both give 1234.56.  When both separators are
    present the last one is the decimal mark.  A single separator followed
    by exactly three digits is ambiguous and resolved by *locale*.
    """
    v = trim(value)
    if v is None:
        return None
    v = _NUMBER_NOISE.sub("", v)
    if not _NUMBER_SHAPE.fullmatch(v):
        return None
    has_dot = "." in v
    has_comma = "," in v
    if has_dot and has_comma:
        if v.rfind(",") > v.rfind("."):
            v = v.replace(".", "").replace(",", ".")
        else:
            v = v.replace(",", "")
    elif has_comma:
        v = _resolve_separator(v, ",", locale)
    elif has_dot:
        v = _resolve_separator(v, ".", locale)
    try:
        return float(v)
    except ValueError:
        return None


def parse_int(value: str | None, locale: str = "us") -> int | None:
    """parse_number truncated toward zero."""
    n = parse_number(value, locale)
    return int(n) if n is not None else None


# ---------------------------------------------------------------------------
# Rule 3: URLs
# ---------------------------------------------------------------------------

def url_lookup_key(value: str | None) -> str | None:
    """Return the matching key for a URL.

    Host lower-cased with a leading ``www.`` removed, scheme and fragment
    dropped, trailing slash on the path removed, query kept as-is.
    Only used for lookups; the stored URL keeps its source form.

    >>> url_lookup_key("https://www.Example.com/a/")
    'example.com/a'
    """
    v = trim(value)
    if v is None:
        return None
    if "://" not in v:
        v = "http://" + v.lstrip("/")
    try:
        parts = urllib.parse.urlsplit(v)
        port = parts.port
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if not host:
        return None
    key = host
    if port and port not in (80, 443):
        key += f":{port}"
    key += parts.path.rstrip("/")
    if parts.query:
        key += "?" + parts.query
    return key


def domain_from_url(value: str | None) -> str | None:
    """Hostname of a URL without its ``www.`` label, or None."""
    key = url_lookup_key(value)
    if key is None:
        return None
    return re.split(r"[:/?]", key, maxsplit=1)[0]


def normalize_domain(value: str | None) -> str | None:
    """Lowercase a bare domain and strip a leading ``www.``."""
    v = trim(value)
    if v is None:
        return None
    v = v.lower().rstrip(".")
    return v[4:] if v.startswith("www.") else v


# ---------------------------------------------------------------------------
# Rule 4: dates
# ---------------------------------------------------------------------------

def parse_ts(value: str | None) -> datetime | None:
    """Parse a timestamp.  Invalid, sentinel or missing → None (never "now")."""
    v = trim(value)
    if v is None or v in _SENTINEL_TS:
        return None
    for fmt in _TS_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(v)
    except ValueError:
        pass
    d = parse_date(v)
    return datetime(d.year, d.month, d.day) if d is not None else None


def parse_date(value: str | None) -> date | None:
    """Parse a calendar date in any of the export formats seen in the wild."""
    v = trim(value)
    if v is None or v in _SENTINEL_TS:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    # "2024-03-01 10:00:00" style timestamps carry a usable date part
    head = v.split("T")[0].split(" ")[0]
    if head != v:
        return parse_date(head)
    return None


# ---------------------------------------------------------------------------
# Rule 5: booleans
# ---------------------------------------------------------------------------

_TRUE = {"true", "1", "yes", "y", "si", "sí"}
_FALSE = {"false", "0", "no", "n"}


def parse_bool(value: str | None) -> bool | None:
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    return None
