from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

DATE_FORMAT_HINT = (
    'Expected ISO 8601 format (e.g., "2025-01-01", "2025-01-01 09:30:00", "2025-01-01T09:30:00", '
    '"2025-01-01T09:30:00Z", or "2025-01-01T09:30:00+00:00")'
)

_DATE_ONLY = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_DATE_TIME = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})(Z|[+-]\d{2}:\d{2})?$")


class FilterValidationError(ValueError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass(slots=True)
class MigrationFilters:
    created_from: str | None = None
    created_to: str | None = None
    last_edit_from: str | None = None
    last_edit_to: str | None = None
    tags: list[str] = field(default_factory=list)


def parse_filter_date(raw: str) -> datetime | None:
    """Parse the accepted ISO-like forms to aware UTC; ``None`` if malformed or out of range."""
    text = raw.strip()
    match = _DATE_ONLY.match(text)
    try:
        if match:
            year, month, day = (int(part) for part in match.groups())
            return datetime(year, month, day, tzinfo=timezone.utc)
        match = _DATE_TIME.match(text)
        if not match:
            return None
        year, month, day, hour, minute, second = (int(part) for part in match.groups()[:6])
        parsed = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    except ValueError:
        return None

    zone = match.group(7)
    if zone in (None, "Z"):
        return parsed
    sign = 1 if zone[0] == "+" else -1
    hours, minutes = int(zone[1:3]), int(zone[4:6])
    if hours > 23 or minutes > 59:
        return None
    return parsed - sign * timedelta(hours=hours, minutes=minutes)


def _provided(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _validate_range(name: str, start: Any, end: Any) -> list[str]:
    errors: list[str] = []
    parsed: dict[str, datetime] = {}
    for suffix, value in (("From", start), ("To", end)):
        if not _provided(value):
            continue
        result = parse_filter_date(value) if isinstance(value, str) else None
        if result is None:
            errors.append(f'Invalid {name}{suffix} date format: "{value}". {DATE_FORMAT_HINT}')
        else:
            parsed[suffix] = result
    if "From" in parsed and "To" in parsed and parsed["From"] > parsed["To"]:
        errors.append(f"{name}From ({start}) must be before or equal to {name}To ({end})")
    return errors


def validate_filters(filters: MigrationFilters | None) -> list[str]:
    if filters is None:
        return []
    errors = _validate_range("created", filters.created_from, filters.created_to)
    errors.extend(_validate_range("lastEdit", filters.last_edit_from, filters.last_edit_to))
    if any(not isinstance(tag, str) or not tag.strip() for tag in filters.tags):
        errors.append("Invalid tags found: tags must be non-empty strings")
    return errors


def _date_range(start: str | None, end: str | None) -> dict[str, str] | None:
    start = start.strip() if start else None
    end = end.strip() if end else None
    if not start and not end:
        return None
    result: dict[str, str] = {}
    if start:
        result["from"] = start
    if end:
        result["to"] = end
    return result


def convert_filters(filters: MigrationFilters | None) -> dict[str, Any]:
    """Translate filters into the platform's ``created_on``/``last_event_on`` range format.

    Raises ``FilterValidationError`` when any filter is malformed.
    """
    if filters is None:
        return {}
    errors = validate_filters(filters)
    if errors:
        raise FilterValidationError(errors)

    converted: dict[str, Any] = {}
    created = _date_range(filters.created_from, filters.created_to)
    if created:
        converted["created_on"] = created
    edited = _date_range(filters.last_edit_from, filters.last_edit_to)
    if edited:
        converted["last_event_on"] = edited
    tags = [tag.strip() for tag in filters.tags if tag.strip()]
    if tags:
        converted["tags"] = tags
    logger.debug("Converted filters: %s", converted)
    return converted


def filters_to_dict(filters: MigrationFilters | None) -> dict[str, Any] | None:
    if filters is None:
        return None
    return {
        "createdFrom": filters.created_from,
        "createdTo": filters.created_to,
        "lastEditFrom": filters.last_edit_from,
        "lastEditTo": filters.last_edit_to,
        "tags": list(filters.tags),
    }


def filters_from_dict(raw: dict[str, Any] | None) -> MigrationFilters | None:
    if not raw:
        return None
    return MigrationFilters(
        created_from=raw.get("createdFrom"),
        created_to=raw.get("createdTo"),
        last_edit_from=raw.get("lastEditFrom"),
        last_edit_to=raw.get("lastEditTo"),
        tags=list(raw.get("tags") or []),
    )
