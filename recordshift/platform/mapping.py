from __future__ import annotations

import logging
from typing import Any

from recordshift.platform.types import Record, RecordField

logger = logging.getLogger(__name__)

# System fields the platform fills in itself; never written on create/update.
SYSTEM_FIELD_TYPES = frozenset({"created_on", "created_by", "created_via"})


def _entry_value(entry: dict[str, Any]) -> Any:
    return entry.get("value")


def _typed_entries(field: RecordField, default_type: str) -> list[dict[str, str]]:
    entries: list[dict[str, str]] = []
    for entry in field.values:
        raw = entry.get("value")
        entries.append(
            {
                "type": str(entry.get("type") or default_type),
                "value": raw if isinstance(raw, str) else str(raw or ""),
            }
        )
    return entries


def extract_field_value(field: RecordField) -> Any:
    """Convert a field's raw value list into the shape the platform accepts on write."""
    if not field.values:
        return None

    first = field.values[0]
    if field.type == "date":
        return {"start": first.get("start"), "end": first.get("end")}
    if field.type == "category":
        return [(_entry_value(entry) or {}).get("id") for entry in field.values]
    if field.type == "app":
        return [(_entry_value(entry) or {}).get("item_id") for entry in field.values]
    if field.type == "contact":
        contacts = []
        for entry in field.values:
            contact = _entry_value(entry) or {}
            contacts.append(contact.get("profile_id") or contact.get("user_id"))
        return contacts
    if field.type == "money":
        raw = _entry_value(first)
        amount = raw.get("value") if isinstance(raw, dict) else raw
        return {"value": amount, "currency": first.get("currency") or "USD"}
    if field.type in {"phone", "tel"}:
        return _typed_entries(field, "mobile")
    if field.type == "email":
        return _typed_entries(field, "work")
    return _entry_value(first)


def map_record_fields(record: Record, mapping: dict[str, str]) -> dict[str, Any]:
    """Project ``record`` onto the target collection using source->target external ids."""
    mapped: dict[str, Any] = {}
    for field in record.fields:
        target = mapping.get(field.external_id)
        if not target:
            continue
        if field.type in SYSTEM_FIELD_TYPES:
            logger.debug("Skipping system field %s during mapping", field.external_id)
            continue
        if not field.values:
            continue
        mapped[target] = extract_field_value(field)
    return mapped
