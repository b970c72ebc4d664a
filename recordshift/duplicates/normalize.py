"""Type-aware normalization of match-field values.

Two values are duplicates when their normalized strings are equal. Every
rule is idempotent, so a normalized string fed back through the same field
type is returned unchanged.
"""

from __future__ import annotations

import math
import re
from typing import Any

_FLOAT_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

LIST_FIELD_TYPES = frozenset({"category", "app", "contact"})
CONTACT_FIELD_TYPES = frozenset({"email", "phone", "tel"})


def _parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _FLOAT_PREFIX.match(str(value))
        if match is None:
            return None
        number = float(match.group(1))
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def canonical_number(value: Any) -> str:
    """Minimal decimal string for a number; ``''`` when the input is not numeric."""
    number = _parse_number(value)
    if number is None:
        return ""
    if number.is_integer() and abs(number) < 1e21:
        return str(int(number))
    return repr(number)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return canonical_number(value)
    return str(value)


def _contact_entry(value: Any) -> str:
    if isinstance(value, dict) and "value" in value:
        value = value["value"]
    return _stringify(value).strip().lower()


def normalize_match_value(value: Any, field_type: str) -> str:
    if value is None:
        return ""

    if field_type == "text":
        return _stringify(value).strip().lower()

    if field_type == "number":
        return canonical_number(value)

    if field_type in LIST_FIELD_TYPES:
        if isinstance(value, (list, tuple)):
            return ",".join(sorted(_stringify(item) for item in value))
        return _stringify(value)

    if field_type in CONTACT_FIELD_TYPES:
        if isinstance(value, (list, tuple)):
            return ",".join(sorted(_contact_entry(item) for item in value))
        return _contact_entry(value)

    if field_type == "date":
        if isinstance(value, dict) and "start" in value:
            return str(value.get("start") or "")
        return _stringify(value)

    if field_type == "money":
        if isinstance(value, dict) and "value" in value:
            value = value["value"]
        return _stringify(value)

    return _stringify(value).strip().lower()


def build_duplicate_key(collection_id: str, field_id: str, normalized: str) -> str:
    return f"{collection_id}:{field_id}:{normalized}"
