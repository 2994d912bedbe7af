"""String and value helpers shared by planning, identity and rollup code.

Key naming follows the conventions of the stored schemas:
- snake():          "Care Summary Identification" -> "care_summary_identification"
- title_from_key(): "care_summary" -> "Care Summary"
- key_to_title():   "dateOfBirth" -> "Date Of Birth"
"""

import re
from datetime import date, datetime
from typing import Any

_DATE_FORMATS: tuple[tuple[str, str], ...] = (
    (r"^\d{4}-\d{2}-\d{2}$", "%Y-%m-%d"),
    (r"^\d{2}-\d{2}-\d{2}$", "%m-%d-%y"),
    (r"^\d{2}-\d{2}-\d{4}$", "%m-%d-%Y"),
    (r"^\d{2}/\d{2}/\d{2}$", "%m/%d/%y"),
    (r"^\d{2}/\d{2}/\d{4}$", "%m/%d/%Y"),
    (r"^\d{4}/\d{2}/\d{2}$", "%Y/%m/%d"),
)


def snake(value: str) -> str:
    """Convert a label to snake_case the way schema keys are derived.

    Words are capitalized and joined, then an underscore is inserted before
    every upper-case letter, so acronyms split per letter ("API Key" ->
    "a_p_i_key").
    """
    if value.islower() and " " not in value:
        return value
    joined = re.sub(r"\s+", "", " ".join(w[:1].upper() + w[1:] for w in value.split(" ")))
    return re.sub(r"(.)(?=[A-Z])", r"\1_", joined).lower()


def title_from_key(key: str) -> str:
    """Title-case a snake_case key: "care_summary" -> "Care Summary"."""
    return " ".join(w[:1].upper() + w[1:].lower() for w in key.replace("_", " ").split(" ") if w)


def key_to_title(key: str) -> str:
    """Human title for a schema key, splitting underscores, spaces and camelCase."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", key)
    words = re.split(r"[_\s]+", spaced)
    return " ".join(w[:1].upper() + w[1:] for w in words if w)


def parse_date(value: str) -> date | None:
    """Parse one of the recognised date layouts, or None."""
    for pattern, fmt in _DATE_FORMATS:
        if re.match(pattern, value):
            try:
                return datetime.strptime(value, fmt).date()
            except ValueError:
                return None
    return None


def looks_like_date(value: str) -> bool:
    """True if the string matches a recognised date layout."""
    return any(re.match(pattern, value) for pattern, _ in _DATE_FORMATS)


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return value.strip() != ""
    return False


def format_value_as_name(value: Any) -> str:
    """Format a borrowed identity value as a readable object name.

    Examples:
        >>> format_value_as_name(True)
        'Yes'
        >>> format_value_as_name("2017-10-31")
        'October 31st, 2017'
        >>> format_value_as_name(1000.33)
        '1,000.33'
        >>> format_value_as_name(50000)
        '50,000'
    """
    if isinstance(value, bool):
        return "Yes" if value else "No"

    if isinstance(value, str) and value.lower() in ("true", "false"):
        return "Yes" if value.lower() == "true" else "No"

    if isinstance(value, str) and looks_like_date(value):
        parsed = parse_date(value)
        if parsed is None:
            return value
        return f"{parsed.strftime('%B')} {_ordinal(parsed.day)}, {parsed.year}"

    if _is_numeric(value):
        number = float(value)
        if number.is_integer():
            return f"{number:,.0f}"
        return f"{number:,.2f}"

    return str(value)


def normalize_date(value: Any) -> str:
    """Normalize a date-like value to YYYY-MM-DD, else its trimmed string."""
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    text = str(value).strip() if value is not None else ""
    parsed = parse_date(text)
    if parsed is not None:
        return parsed.isoformat()
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        return text


def normalize_for_match(value: Any) -> str:
    """Normalize a value for exact identity comparison (trim + lowercase)."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()
