from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from recordshift.jobs.types import ThroughputMetrics

ROLLING_WINDOW = 10
RATE_LIMIT_ETA_BUFFER = 1.1


@dataclass(slots=True)
class BatchTiming:
    batch_number: int
    started: float
    finished: float
    items_processed: int


class ThroughputCalculator:
    """Rolling throughput over the last ten batches plus cumulative rate-limit counters."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._timings: deque[BatchTiming] = deque(maxlen=ROLLING_WINDOW)
        self._started = clock()
        self.rate_limit_pauses = 0
        self.rate_limit_delay_ms = 0

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def start_batch(self) -> float:
        return self._clock()

    def complete_batch(
        self,
        batch_number: int,
        started: float,
        items_processed: int,
        *,
        rate_limited: bool = False,
        rate_limit_delay_ms: int = 0,
    ) -> None:
        self._timings.append(BatchTiming(batch_number, started, self._clock(), items_processed))
        if rate_limited:
            self.record_rate_limit_pause(rate_limit_delay_ms)

    def record_rate_limit_pause(self, delay_ms: int) -> None:
        self.rate_limit_pauses += 1
        self.rate_limit_delay_ms += int(delay_ms)

    def metrics(self, total_items: int, processed_items: int) -> ThroughputMetrics:
        elapsed = self._clock() - self._started
        items_per_second = processed_items / elapsed if elapsed > 0 else 0.0
        batches_per_minute = 0.0
        avg_duration_ms = 0.0

        if self._timings:
            recent_items = sum(item.items_processed for item in self._timings)
            recent_seconds = sum(item.finished - item.started for item in self._timings)
            if recent_seconds > 0:
                items_per_second = recent_items / recent_seconds
                batches_per_minute = len(self._timings) / (recent_seconds / 60.0)
            avg_duration_ms = recent_seconds * 1000.0 / len(self._timings)

        eta: datetime | None = None
        remaining = total_items - processed_items
        if remaining > 0 and items_per_second > 0:
            seconds = remaining / items_per_second
            if self.rate_limit_pauses > 0:
                seconds *= RATE_LIMIT_ETA_BUFFER
            eta = self._now() + timedelta(seconds=seconds)

        return ThroughputMetrics(
            items_per_second=round(items_per_second, 2),
            batches_per_minute=round(batches_per_minute, 2),
            avg_batch_duration_ms=float(round(avg_duration_ms)),
            estimated_completion_time=eta,
            rate_limit_pauses=self.rate_limit_pauses,
            total_rate_limit_delay_ms=self.rate_limit_delay_ms,
        )

    def reset(self) -> None:
        self._timings.clear()
        self.rate_limit_pauses = 0
        self.rate_limit_delay_ms = 0
        self._started = self._clock()
