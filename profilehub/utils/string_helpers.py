"""
String Helpers.

Re-exports pydantic's ``JsonValue`` for models and repositories, and holds
the small text rules applied to profile names.
"""

from __future__ import annotations

import json
import re
import unicodedata
from typing import Optional, Union

from pydantic import JsonValue

__all__ = [
    "JsonValue",
    "first_word",
    "has_control_chars",
    "load_json_object",
    "name_key",
    "normalize_profile_name",
]

_RE_WHITESPACE = re.compile(r"\s+")


def normalize_profile_name(name: str) -> str:
    """Strip surrounding whitespace.  Inner spacing is kept as typed."""
    return name.strip()


def name_key(name: str) -> str:
    """Comparison key for duplicate detection: trimmed and case-folded."""
    return normalize_profile_name(name).casefold()


def has_control_chars(text: str) -> bool:
    """``True`` if *text* contains any Unicode control character (Cc/Cf)."""
    return any(unicodedata.category(ch) in ("Cc", "Cf") for ch in text)


def first_word(text: Optional[str]) -> Optional[str]:
    """Return the first whitespace-delimited word of *text*, or ``None``.

    >>> first_word("  Ada Lovelace ")
    'Ada'
    """
    if not text:
        return None
    parts = _RE_WHITESPACE.split(text.strip(), maxsplit=1)
    return parts[0] or None


def load_json_object(raw: Union[str, bytes, dict, None]) -> dict[str, JsonValue]:
    """Decode a JSON object column.  ``None``, empty and non-object values give ``{}``."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return value if isinstance(value, dict) else {}
