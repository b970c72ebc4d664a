from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from recordshift.duplicates.normalize import normalize_match_value
from recordshift.duplicates.types import DuplicateGroup, DuplicateItem, KeepStrategy
from recordshift.jobs.types import RecordId
from recordshift.platform.mapping import extract_field_value
from recordshift.platform.types import Record

logger = logging.getLogger(__name__)


def _parse_created(raw: str | None) -> datetime | None:
    if not raw:
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def _id_key(item_id: RecordId) -> tuple[int, int, str]:
    if isinstance(item_id, int):
        return (0, item_id, "")
    text = str(item_id)
    if text.isdigit():
        return (0, int(text), "")
    return (1, 0, text)


def _member_order(item: DuplicateItem) -> tuple[int, float, tuple[int, int, str]]:
    created = _parse_created(item.created_on)
    if created is None:
        return (1, 0.0, _id_key(item.item_id))
    return (0, created.timestamp(), _id_key(item.item_id))


def _display_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item.get("value") if isinstance(item, dict) else item) for item in value)
    if isinstance(value, dict):
        return str(value.get("value", value.get("start", value)))
    return str(value)


class GroupAccumulator:
    """Collects records page by page and groups them by normalized match value."""

    def __init__(self, match_field: str):
        self._match_field = match_field
        self._groups: dict[str, list[DuplicateItem]] = {}
        self.items_seen = 0
        self.items_skipped = 0

    def add(self, record: Record) -> None:
        self.items_seen += 1
        field = record.field_by_id(self._match_field)
        if field is None:
            self.items_skipped += 1
            return
        value = extract_field_value(field)
        normalized = normalize_match_value(value, field.type)
        if not normalized:
            self.items_skipped += 1
            return
        self._groups.setdefault(normalized, []).append(
            DuplicateItem(
                item_id=record.id,
                title=record.title or f"Item {record.id}",
                created_on=record.created_on,
                last_edit_on=record.last_event_on or record.created_on,
                match_value=_display_value(value),
            )
        )

    def groups(self) -> list[DuplicateGroup]:
        result = [
            DuplicateGroup(match_value=normalized, items=sorted(members, key=_member_order))
            for normalized, members in self._groups.items()
            if len(members) > 1
        ]
        result.sort(key=lambda group: (-len(group.items), group.match_value))
        logger.info(
            "Duplicate detection: seen=%s skipped=%s unique=%s duplicate_groups=%s",
            self.items_seen,
            self.items_skipped,
            len(self._groups),
            len(result),
        )
        return result


def detect_duplicate_groups(records: Iterable[Record], match_field: str) -> list[DuplicateGroup]:
    """Group records sharing a normalized match value.

    Singletons are dropped. Members are ordered oldest first; members with an
    unparseable creation time go last, ties broken by id. Groups are ordered
    largest first.
    """
    accumulator = GroupAccumulator(match_field)
    for record in records:
        accumulator.add(record)
    return accumulator.groups()


def apply_keep_strategy(groups: list[DuplicateGroup], strategy: KeepStrategy | str) -> list[DuplicateGroup]:
    strategy = KeepStrategy(strategy)
    if strategy == KeepStrategy.MANUAL:
        raise ValueError("The manual keep strategy is resolved by the caller, not applied automatically")

    resolved: list[DuplicateGroup] = []
    for group in groups:
        members = sorted(group.items, key=_member_order)
        keep_index = 0 if strategy == KeepStrategy.OLDEST else len(members) - 1
        keep = members[keep_index]
        resolved.append(
            DuplicateGroup(
                match_value=group.match_value,
                items=members,
                keep_item_id=keep.item_id,
                delete_item_ids=[item.item_id for index, item in enumerate(members) if index != keep_index],
                approved=group.approved,
            )
        )
    return resolved
