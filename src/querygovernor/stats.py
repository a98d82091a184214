"""
Stats Aggregator - point-in-time counters for metrics sinks.

Pulls together the governor's own counters, the recorder's latency
statistics, the suggestion log size and the pool occupancy into one
immutable StatsSnapshot.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

from querygovernor.models import PoolSnapshot, StatsSnapshot

if TYPE_CHECKING:
    from querygovernor.advisor import SuggestionLog
    from querygovernor.recorder import PerformanceRecorder


def percentile(samples: Sequence[float], p: float) -> float:
    """
    Nearest-rank percentile.

    Sorts ascending and takes the element at ``ceil(n * p / 100) - 1``,
    clamped to the sample range. An empty sample yields 0.0.
    """
    if not samples:
        return 0.0
    ordered = sorted(samples)
    n = len(ordered)
    index = math.ceil(n * p / 100) - 1
    index = min(max(index, 0), n - 1)
    return ordered[index]


@dataclass
class RequestCounters:
    """Caller-facing counters owned by the governor."""

    total_queries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def cache_hit_rate(self) -> float:
        """Hits as a percentage of all execute calls, 2 decimal places."""
        if self.total_queries == 0:
            return 0.0
        return round(self.cache_hits / self.total_queries * 100, 2)


class StatsAggregator:
    def __init__(
        self,
        recorder: PerformanceRecorder,
        counters: RequestCounters,
        suggestions: SuggestionLog,
        pool_snapshot: Callable[[], PoolSnapshot] | None = None,
        pending_analyses: Callable[[], int] | None = None,
    ) -> None:
        self.recorder = recorder
        self.counters = counters
        self.suggestions = suggestions
        self._pool_snapshot = pool_snapshot
        self._pending_analyses = pending_analyses

    def snapshot(self) -> StatsSnapshot:
        samples = self.recorder.samples()
        return StatsSnapshot(
            total_queries=self.counters.total_queries,
            slow_queries=self.recorder.slow_queries,
            avg_query_time=round(self.recorder.avg_query_time, 3),
            cache_hit_rate=self.counters.cache_hit_rate,
            cache_hits=self.counters.cache_hits,
            cache_misses=self.counters.cache_misses,
            slow_query_signature_count=self.recorder.slow_signature_count,
            suggestion_count=len(self.suggestions),
            pool=self._pool_snapshot() if self._pool_snapshot else None,
            signature_count=self.recorder.signature_count,
            p95_query_time=percentile(samples, 95),
            p99_query_time=percentile(samples, 99),
            pending_analyses=self._pending_analyses() if self._pending_analyses else 0,
        )
