from __future__ import annotations

from typing import Any, Protocol

from recordshift.jobs.types import RecordId
from recordshift.platform.types import CollectionField, Record, RecordPage


class RecordPlatform(Protocol):
    """Narrow view of the remote platform used by the migration engines."""

    def list_records(
        self,
        collection_id: str,
        *,
        offset: int,
        limit: int,
        filters: dict[str, Any] | None = None,
    ) -> RecordPage: ...

    def get_records(self, record_ids: list[RecordId]) -> list[Record]: ...

    def create_record(
        self,
        collection_id: str,
        fields: dict[str, Any],
        external_id: str | None = None,
    ) -> RecordId: ...

    def update_record(self, record_id: RecordId, fields: dict[str, Any]) -> None: ...

    def delete_record(self, record_id: RecordId) -> None: ...

    def find_records(self, collection_id: str, field_id: str, value: str) -> list[Record]: ...

    def collection_fields(self, collection_id: str) -> list[CollectionField]: ...


class RateLimitProvider(Protocol):
    def should_pause(self, threshold: int) -> bool: ...

    def seconds_until_reset(self) -> float: ...

    def wait_for_reset(self) -> None: ...


class NullRateLimitProvider:
    """Provider for platforms without quota headers: never pauses."""

    def should_pause(self, threshold: int) -> bool:
        return False

    def seconds_until_reset(self) -> float:
        return 0.0

    def wait_for_reset(self) -> None:
        return None
