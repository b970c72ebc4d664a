from __future__ import annotations

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from recordshift.db.models import FailureRecord
from recordshift.items.types import FailedItem
from recordshift.jobs.types import ErrorCategory, RecordId

logger = logging.getLogger(__name__)


def _coerce_id(raw: str | None) -> RecordId | None:
    if raw is None:
        return None
    return int(raw) if raw.isdigit() else raw


class FailureLog:
    """Append-only per-item failure detail, kept outside the job document."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def append(self, job_id: str, failure: FailedItem) -> None:
        with self._session_factory() as session:
            session.add(
                FailureRecord(
                    job_id=job_id,
                    source_item_id=str(failure.source_item_id),
                    target_item_id=str(failure.target_item_id) if failure.target_item_id is not None else None,
                    batch_number=failure.batch_number,
                    category=failure.category.value,
                    code=failure.code,
                    message=failure.message,
                    attempt_count=failure.attempt_count,
                    first_attempt_at=failure.first_attempt_at,
                    last_attempt_at=failure.last_attempt_at,
                )
            )
            session.commit()
        logger.debug(
            "Logged failed item %s (%s)",
            failure.source_item_id,
            failure.category.value,
            extra={"job_id": job_id},
        )

    def list_for_job(self, job_id: str, *, limit: int = 100, offset: int = 0) -> list[FailedItem]:
        bounded = max(1, min(limit, 1000))
        with self._session_factory() as session:
            rows = session.scalars(
                select(FailureRecord)
                .where(FailureRecord.job_id == job_id)
                .order_by(FailureRecord.id.asc())
                .limit(bounded)
                .offset(max(offset, 0))
            ).all()
            return [self._to_item(row) for row in rows]

    def count_by_category(self, job_id: str) -> dict[str, int]:
        with self._session_factory() as session:
            rows = session.execute(
                select(FailureRecord.category, func.count(FailureRecord.id))
                .where(FailureRecord.job_id == job_id)
                .group_by(FailureRecord.category)
            ).all()
            return {str(category): int(count) for category, count in rows}

    def count(self, job_id: str) -> int:
        with self._session_factory() as session:
            return int(
                session.scalar(select(func.count(FailureRecord.id)).where(FailureRecord.job_id == job_id)) or 0
            )

    def source_ids_for_retry(
        self,
        job_id: str,
        categories: set[ErrorCategory] | None = None,
    ) -> list[RecordId]:
        stmt = select(FailureRecord.source_item_id).where(FailureRecord.job_id == job_id)
        if categories:
            stmt = stmt.where(FailureRecord.category.in_([category.value for category in categories]))
        stmt = stmt.group_by(FailureRecord.source_item_id).order_by(func.min(FailureRecord.id))
        with self._session_factory() as session:
            return [_coerce_id(raw) for raw in session.scalars(stmt).all()]

    def clear(self, job_id: str) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(FailureRecord).where(FailureRecord.job_id == job_id))
            session.commit()
            return int(result.rowcount or 0)

    def _to_item(self, row: FailureRecord) -> FailedItem:
        return FailedItem(
            source_item_id=_coerce_id(row.source_item_id),
            target_item_id=_coerce_id(row.target_item_id),
            batch_number=row.batch_number,
            category=ErrorCategory(row.category),
            code=row.code,
            message=row.message,
            attempt_count=row.attempt_count,
            first_attempt_at=row.first_attempt_at,
            last_attempt_at=row.last_attempt_at,
        )
