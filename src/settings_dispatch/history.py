"""Bounded request history and derived metrics."""

from __future__ import annotations

import math
from collections import Counter, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from settings_dispatch.circuit_breaker import BreakerSnapshot


class Outcome(StrEnum):
    """Terminal outcome recorded for a request."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class HistoryEntry:
    """One terminal request, kept after the request itself is gone."""

    request_id: str
    action: str
    outcome: Outcome
    started_at: datetime
    duration_ms: float
    attempt: int
    error_kind: str | None = None


@dataclass(frozen=True)
class HistoryFilter:
    """Selection applied by ``RequestHistory.entries``."""

    action: str | None = None
    outcome: Outcome | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0")
        if self.outcome is not None and not isinstance(self.outcome, Outcome):
            object.__setattr__(self, "outcome", Outcome(self.outcome))

    def matches(self, entry: HistoryEntry) -> bool:
        if self.action is not None and entry.action != self.action:
            return False
        if self.outcome is not None and entry.outcome != self.outcome:
            return False
        if self.since is not None and entry.started_at < self.since:
            return False
        if self.until is not None and entry.started_at > self.until:
            return False
        return True


class RequestHistory:
    """Fixed-capacity ring buffer of ``HistoryEntry`` with FIFO eviction."""

    def __init__(self, max_size: int = 200) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._entries: deque[HistoryEntry] = deque(maxlen=max_size)

    @property
    def max_size(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def resize(self, max_size: int) -> None:
        """Change capacity, keeping the newest entries when shrinking."""
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._entries = deque(self._entries, maxlen=max_size)

    def clear(self) -> None:
        self._entries.clear()

    def oldest_first(self) -> list[HistoryEntry]:
        return list(self._entries)

    def entries(self, history_filter: HistoryFilter | None = None) -> list[HistoryEntry]:
        """Return matching entries, newest first."""
        selected = history_filter or HistoryFilter()
        matched: list[HistoryEntry] = []
        for entry in reversed(self._entries):
            if selected.limit is not None and len(matched) >= selected.limit:
                break
            if selected.matches(entry):
                matched.append(entry)
        return matched


@dataclass(frozen=True)
class LatencyStats:
    average_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    p95_ms: float = 0.0


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time view of dispatch activity."""

    total_requests: int
    successes: int
    failures: int
    cancellations: int
    success_rate: float
    latency: LatencyStats
    failures_by_kind: dict[str, int] = field(default_factory=dict)
    requests_by_action: dict[str, int] = field(default_factory=dict)
    queue_depth: int = 0
    in_flight: int = 0
    total_enqueued: int = 0
    total_deduplicated: int = 0
    max_queue_depth: int = 0
    average_wait_ms: float = 0.0
    breakers: dict[str, BreakerSnapshot] = field(default_factory=dict)


def percentile(values: list[float], fraction: float) -> float:
    """Nearest-rank percentile of ``values``."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(math.ceil(fraction * len(ordered)), 1)
    return ordered[rank - 1]


def latency_stats(entries: Iterable[HistoryEntry]) -> LatencyStats:
    """Latency over successful requests."""
    durations = [
        entry.duration_ms for entry in entries if entry.outcome == Outcome.SUCCEEDED
    ]
    if not durations:
        return LatencyStats()
    return LatencyStats(
        average_ms=sum(durations) / len(durations),
        min_ms=min(durations),
        max_ms=max(durations),
        p95_ms=percentile(durations, 0.95),
    )


def build_metrics(
    history: RequestHistory,
    *,
    queue_depth: int = 0,
    in_flight: int = 0,
    total_enqueued: int = 0,
    total_deduplicated: int = 0,
    max_queue_depth: int = 0,
    average_wait_ms: float = 0.0,
    breakers: Mapping[str, BreakerSnapshot] | None = None,
) -> MetricsSnapshot:
    """Derive a ``MetricsSnapshot`` from the recorded history and queue gauges.

    Cancellations are excluded from the success rate since they are not
    operational failures.
    """
    entries = history.oldest_first()
    outcomes = Counter(entry.outcome for entry in entries)
    successes = outcomes[Outcome.SUCCEEDED]
    failures = outcomes[Outcome.FAILED]
    decided = successes + failures
    return MetricsSnapshot(
        total_requests=len(entries),
        successes=successes,
        failures=failures,
        cancellations=outcomes[Outcome.CANCELLED],
        success_rate=successes / decided if decided else 0.0,
        latency=latency_stats(entries),
        failures_by_kind=dict(
            Counter(
                entry.error_kind or "unknown"
                for entry in entries
                if entry.outcome == Outcome.FAILED
            )
        ),
        requests_by_action=dict(Counter(entry.action for entry in entries)),
        queue_depth=queue_depth,
        in_flight=in_flight,
        total_enqueued=total_enqueued,
        total_deduplicated=total_deduplicated,
        max_queue_depth=max_queue_depth,
        average_wait_ms=average_wait_ms,
        breakers=dict(breakers or {}),
    )
