from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from recordshift.jobs.types import RecordId


class PlatformApiError(RuntimeError):
    """Error response from the remote platform API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        error_detail: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_detail = error_detail

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code in {420, 429}

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

    def to_human_readable(self) -> str:
        parts = [str(self)]
        if self.error_code:
            parts.append(f"Error code: {self.error_code}")
        if self.error_detail:
            parts.append(f"Details: {self.error_detail}")
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        return " | ".join(parts)


@dataclass(slots=True)
class RecordField:
    field_id: str
    external_id: str
    type: str
    values: list[dict[str, Any]] = field(default_factory=list)
    label: str | None = None


@dataclass(slots=True)
class Record:
    id: RecordId
    fields: list[RecordField] = field(default_factory=list)
    title: str | None = None
    created_on: str | None = None
    last_event_on: str | None = None
    external_id: str | None = None

    def field_by_id(self, field_id: str) -> RecordField | None:
        for item in self.fields:
            if item.field_id == field_id or item.external_id == field_id:
                return item
        return None


@dataclass(slots=True)
class RecordPage:
    items: list[Record]
    total: int
    filtered: int | None = None


@dataclass(slots=True)
class CollectionField:
    field_id: str
    external_id: str
    type: str
    label: str = ""
