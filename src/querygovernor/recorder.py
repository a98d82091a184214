"""
Per-signature latency accounting.

Every executed query is normalised into a signature that ignores literal
values, so ``SELECT * FROM t WHERE id = 1`` and ``... id = 2`` are counted
together. Signatures are truncated to a bounded length; two long queries
that differ only past that point share a signature. That imprecision is
accepted.

The recorder also keeps:
- a process-wide running mean over all recorded latencies
- a global slow-query counter
- a bounded window of recent latencies for percentile reporting
"""

from __future__ import annotations

import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

_PLACEHOLDER = re.compile(r"\$\d+")
_STRING_LITERAL = re.compile(r"'[^']*'")
_NUMBER = re.compile(r"\d+")
_WHITESPACE = re.compile(r"\s+")
_QUERY_TYPE = re.compile(r"^\s*(SELECT|INSERT|UPDATE|DELETE|CREATE|DROP|ALTER)\b", re.IGNORECASE)

PLACEHOLDER_TOKEN = "$N"
WILDCARD_TOKEN = "?"


def normalize_signature(query: str, max_length: int = 200) -> str:
    """
    Reduce a query to a literal-free signature.

    Placeholders become ``$N``, string literals ``'?'`` and digit runs ``?``;
    whitespace is collapsed and the result truncated to ``max_length``.
    """
    text = _PLACEHOLDER.sub(PLACEHOLDER_TOKEN, query)
    text = _STRING_LITERAL.sub(f"'{WILDCARD_TOKEN}'", text)
    # Placeholders were already rewritten to "$N", so this only hits literals.
    text = _NUMBER.sub(WILDCARD_TOKEN, text)
    text = _WHITESPACE.sub(" ", text).strip()
    return text[:max_length]


def get_query_type(query: str) -> str:
    """Leading statement keyword (SELECT, INSERT, ...) or UNKNOWN."""
    match = _QUERY_TYPE.match(query)
    return match.group(1).upper() if match else "UNKNOWN"


_READ_PREFIX = re.compile(r"^\s*(SELECT|WITH|VALUES|SHOW|TABLE)\b", re.IGNORECASE)
_WRITE_KEYWORD = re.compile(r"\b(INSERT|UPDATE|DELETE|MERGE)\b", re.IGNORECASE)


def is_read_query(query: str) -> bool:
    """
    True for statements that only read.

    A WITH statement counts as a read unless one of its CTEs modifies data.
    """
    match = _READ_PREFIX.match(query)
    if not match:
        return False
    if match.group(1).upper() == "WITH":
        return not _WRITE_KEYWORD.search(_STRING_LITERAL.sub("''", query))
    return True


@dataclass
class SignatureStats:
    """Accumulated latency statistics for one query signature."""

    signature: str
    count: int = 0
    total_time: float = 0.0
    avg_time: float = 0.0
    max_time: float = 0.0
    slow_count: int = 0
    last_executed_at: float = field(default_factory=time.time)

    def add(self, elapsed_ms: float, slow: bool) -> None:
        self.count += 1
        self.total_time += elapsed_ms
        self.avg_time = self.total_time / self.count
        self.max_time = max(self.max_time, elapsed_ms)
        if slow:
            self.slow_count += 1
        self.last_executed_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "count": self.count,
            "total_time": round(self.total_time, 3),
            "avg_time": round(self.avg_time, 3),
            "max_time": round(self.max_time, 3),
            "slow_count": self.slow_count,
            "last_executed_at": self.last_executed_at,
        }


class PerformanceRecorder:
    """
    Accumulates latency statistics per signature and globally.

    Thread-safe: mutation is serialized with a lock. Signature entries live
    for the lifetime of the recorder.
    """

    def __init__(
        self,
        slow_query_threshold_ms: float = 1000.0,
        signature_max_length: int = 200,
        sample_size: int = 1000,
    ) -> None:
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.signature_max_length = signature_max_length
        self._signatures: dict[str, SignatureStats] = {}
        self._samples: deque[float] = deque(maxlen=sample_size)
        self._lock = threading.Lock()
        self.executed_queries = 0
        self.slow_queries = 0
        self.avg_query_time = 0.0

    def signature_for(self, query: str) -> str:
        return normalize_signature(query, self.signature_max_length)

    def is_slow(self, elapsed_ms: float) -> bool:
        return elapsed_ms > self.slow_query_threshold_ms

    def record(self, query: str, elapsed_ms: float) -> bool:
        """
        Record one execution.

        Returns:
            True if the execution exceeded the slow-query threshold.
        """
        signature = self.signature_for(query)
        slow = self.is_slow(elapsed_ms)

        with self._lock:
            stats = self._signatures.get(signature)
            if stats is None:
                stats = SignatureStats(signature=signature)
                self._signatures[signature] = stats
            stats.add(elapsed_ms, slow)

            self.executed_queries += 1
            self.avg_query_time = (
                self.avg_query_time * (self.executed_queries - 1) + elapsed_ms
            ) / self.executed_queries
            self._samples.append(elapsed_ms)

            if slow:
                self.slow_queries += 1

        return slow

    def get(self, query_or_signature: str) -> SignatureStats | None:
        """Stats for a raw query or an already-normalised signature."""
        stats = self._signatures.get(query_or_signature)
        if stats is None:
            stats = self._signatures.get(self.signature_for(query_or_signature))
        return stats

    @property
    def signature_count(self) -> int:
        return len(self._signatures)

    @property
    def slow_signature_count(self) -> int:
        return sum(1 for s in self._signatures.values() if s.slow_count > 0)

    def samples(self) -> list[float]:
        """Copy of the recent latency window."""
        with self._lock:
            return list(self._samples)

    def top_signatures(self, limit: int = 10, by: str = "total_time") -> list[SignatureStats]:
        """Signatures ordered by total_time, avg_time, max_time or count."""
        if by not in ("total_time", "avg_time", "max_time", "count"):
            raise ValueError(f"Unknown ordering: {by}")
        with self._lock:
            ranked = sorted(self._signatures.values(), key=lambda s: getattr(s, by), reverse=True)
        return ranked[:limit]

