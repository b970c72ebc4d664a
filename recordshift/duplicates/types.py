from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from recordshift.jobs.types import RecordId
from recordshift.platform.types import Record


class KeepStrategy(str, Enum):
    OLDEST = "oldest"
    NEWEST = "newest"
    MANUAL = "manual"


@dataclass(slots=True)
class DuplicateItem:
    item_id: RecordId
    title: str
    created_on: str | None
    last_edit_on: str | None
    match_value: str
    field_values: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DuplicateGroup:
    match_value: str
    items: list[DuplicateItem]
    keep_item_id: RecordId | None = None
    delete_item_ids: list[RecordId] | None = None
    approved: bool = False


@dataclass(slots=True)
class DuplicateCheckResult:
    is_duplicate: bool
    normalized_key: str
    from_cache: bool
    existing: Record | None = None


@dataclass(slots=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    hit_rate: float


def duplicate_item_to_dict(item: DuplicateItem) -> dict[str, Any]:
    return {
        "itemId": item.item_id,
        "title": item.title,
        "createdOn": item.created_on,
        "lastEditOn": item.last_edit_on,
        "matchValue": item.match_value,
        "fieldValues": item.field_values,
    }


def duplicate_item_from_dict(raw: dict[str, Any]) -> DuplicateItem:
    return DuplicateItem(
        item_id=raw["itemId"],
        title=str(raw.get("title") or f"Item {raw['itemId']}"),
        created_on=raw.get("createdOn"),
        last_edit_on=raw.get("lastEditOn"),
        match_value=str(raw.get("matchValue", "")),
        field_values=dict(raw.get("fieldValues") or {}),
    )


def duplicate_group_to_dict(group: DuplicateGroup) -> dict[str, Any]:
    return {
        "matchValue": group.match_value,
        "items": [duplicate_item_to_dict(item) for item in group.items],
        "keepItemId": group.keep_item_id,
        "deleteItemIds": list(group.delete_item_ids) if group.delete_item_ids is not None else None,
        "approved": group.approved,
    }


def duplicate_group_from_dict(raw: dict[str, Any]) -> DuplicateGroup:
    delete_ids = raw.get("deleteItemIds")
    return DuplicateGroup(
        match_value=str(raw.get("matchValue", "")),
        items=[duplicate_item_from_dict(item) for item in raw.get("items") or []],
        keep_item_id=raw.get("keepItemId"),
        delete_item_ids=list(delete_ids) if delete_ids is not None else None,
        approved=bool(raw.get("approved", False)),
    )
