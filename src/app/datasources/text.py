"""Value normalizers shared by the field mapper and the CSV parser.

Every raw tracker value goes through extract_display_value() first; the
functions below then canonicalize the resulting text. None of them raise.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from src.app.datasources.schemas import TShirtSize

LIST_SEPARATOR = re.compile(r"[;,|]")
_ISO_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")
_ALL_CAPS = re.compile(r"^[A-Z0-9]+$")

# Keys of identity-like objects, in the order they are preferred
DISPLAY_KEYS = ("displayName", "uniqueName", "mail", "email", "value")

REGION_ALIASES = {
    "us": "US",
    "usa": "US",
    "united states": "US",
    "canada": "Canada",
}


def extract_display_value(value: Any) -> str:
    """Render any raw field value as display text.

    - None -> ""
    - str/number/bool -> str(value), trimmed
    - list -> each element rendered, empties dropped, joined with ", "
    - dict -> first non-empty of displayName, uniqueName, mail, email, value
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        parts = [extract_display_value(entry) for entry in value]
        return ", ".join(part for part in parts if part)
    if isinstance(value, dict):
        for key in DISPLAY_KEYS:
            rendered = extract_display_value(value.get(key))
            if rendered:
                return rendered
        return ""
    return str(value).strip()


def _title_token(token: str) -> str:
    token = token.strip()
    if not token:
        return ""
    # Acronyms (ERP, APAC) and codes (Q3, H2O) stay as typed
    if _ALL_CAPS.match(token) and (len(token) <= 4 or any(ch.isdigit() for ch in token)):
        return token
    lower = token.lower()
    return lower[:1].upper() + lower[1:]


def title_case(value: str) -> str:
    """Title-case words, hyphen-aware, preserving short all-caps tokens."""
    if not value:
        return ""
    words = value.split(" ")
    return " ".join("-".join(_title_token(part) for part in word.split("-")) for word in words).strip()


def split_list(value: Any) -> list[str]:
    """Split a ;/,/| delimited string (or a list) into trimmed, non-empty parts."""
    if isinstance(value, (list, tuple)):
        entries = [extract_display_value(entry) for entry in value]
        return [entry for entry in entries if entry]
    text = extract_display_value(value)
    if not text:
        return []
    return [part.strip() for part in LIST_SEPARATOR.split(text) if part.strip()]


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for entry in values:
        key = entry.lower()
        if entry and key not in seen:
            seen.add(key)
            result.append(entry)
    return result


def normalize_region(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return ""
    alias = REGION_ALIASES.get(trimmed.lower())
    return alias or title_case(trimmed)


def normalize_regions(values: list[str]) -> list[str]:
    return _dedupe([normalize_region(entry) for entry in values])


def normalize_stakeholders(values: list[str]) -> list[str]:
    return _dedupe([title_case(entry) for entry in values])


def normalize_t_shirt_size(value: str) -> TShirtSize | None:
    """Canonicalize to XS/S/M/L; anything else is empty (None)."""
    key = value.strip().upper()
    try:
        return TShirtSize(key)
    except ValueError:
        return None


def to_iso_date(value: Any) -> str:
    """Render a date-ish value as YYYY-MM-DD, or "" when it is not a date."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = extract_display_value(value)
    if not text:
        return ""
    match = _ISO_DATE_PREFIX.match(text)
    if match:
        try:
            return date.fromisoformat(match.group(1)).isoformat()
        except ValueError:
            return ""
    # US style, as typed into spreadsheets
    for fmt in ("%m/%d/%Y", "%m/%d/%y"):
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return ""


def to_priority(value: Any) -> int | None:
    text = extract_display_value(value)
    if not text:
        return None
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return None


def decode_tags(value: Any, prefix: str) -> list[str]:
    """Keep tags starting with `prefix` (case-insensitive), prefix stripped.

    Tracker tags arrive as one "a; b; c" string; a list is used as-is.
    An empty prefix keeps every tag.
    """
    if isinstance(value, (list, tuple)):
        tags = [extract_display_value(entry) for entry in value]
    else:
        tags = extract_display_value(value).split(";")
    normalized_prefix = prefix.strip().lower()
    decoded: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if not tag:
            continue
        if not normalized_prefix:
            decoded.append(tag)
            continue
        if not tag.lower().startswith(normalized_prefix):
            continue
        stripped = tag[len(normalized_prefix):].strip()
        if stripped:
            decoded.append(stripped)
    return decoded
