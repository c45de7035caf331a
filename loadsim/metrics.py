"""Concurrent metric aggregation: counts, error rates, and latency samples."""

import heapq
import math
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

from loadsim.models import MetricKey, Outcome

logger = structlog.get_logger()


def percentile(sorted_samples: Tuple[float, ...], pct: float) -> Optional[float]:
    """Nearest-rank percentile over an ascending sample population.

    Returns the smallest sample such that at least ``pct`` percent of all
    samples are less than or equal to it, or None when there are no samples.

    Every result is an observed sample. k6 interpolates linearly between the
    neighbouring ranks instead, so the two can disagree right at a boundary:
    950 samples of 1000ms plus 50 of 2000ms give p(95) = 1000 here and 1050
    in k6. A ``p(95)<1000`` rule therefore fails here exactly when some
    request above the bound falls inside the fastest 95%.
    """
    if not sorted_samples:
        return None
    if pct <= 0:
        return sorted_samples[0]
    rank = math.ceil(pct * len(sorted_samples) / 100.0)
    index = min(max(rank, 1), len(sorted_samples)) - 1
    return sorted_samples[index]


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time view of one accumulator set."""

    count: int = 0
    error_count: int = 0
    failed_requests: int = 0
    samples: Tuple[float, ...] = ()  # ascending; requests that were never sent have none
    check_passes: int = 0
    check_fails: int = 0

    @property
    def error_rate(self) -> float:
        return self.error_count / self.count if self.count else 0.0

    @property
    def failed_rate(self) -> float:
        return self.failed_requests / self.count if self.count else 0.0

    @property
    def checks_rate(self) -> Optional[float]:
        total = self.check_passes + self.check_fails
        return self.check_passes / total if total else None

    def percentile(self, pct: float) -> Optional[float]:
        return percentile(self.samples, pct)

    @property
    def avg(self) -> Optional[float]:
        return sum(self.samples) / len(self.samples) if self.samples else None

    @property
    def min(self) -> Optional[float]:
        return self.samples[0] if self.samples else None

    @property
    def max(self) -> Optional[float]:
        return self.samples[-1] if self.samples else None

    @property
    def med(self) -> Optional[float]:
        return self.percentile(50)

    @classmethod
    def merge(cls, parts: Iterable["StatsSnapshot"]) -> "StatsSnapshot":
        parts = list(parts)
        return cls(
            count=sum(p.count for p in parts),
            error_count=sum(p.error_count for p in parts),
            failed_requests=sum(p.failed_requests for p in parts),
            samples=tuple(heapq.merge(*(p.samples for p in parts))),
            check_passes=sum(p.check_passes for p in parts),
            check_fails=sum(p.check_fails for p in parts),
        )

    def summary(self) -> dict:
        def _ms(value):
            return round(value, 2) if value is not None else None

        return {
            "count": self.count,
            "error_count": self.error_count,
            "error_rate": round(self.error_rate, 4),
            "failed_requests": self.failed_requests,
            "latency_ms": {
                "avg": _ms(self.avg),
                "min": _ms(self.min),
                "med": _ms(self.med),
                "max": _ms(self.max),
                "p90": _ms(self.percentile(90)),
                "p95": _ms(self.percentile(95)),
                "p99": _ms(self.percentile(99)),
            },
        }


@dataclass(frozen=True)
class MetricsSnapshot:
    global_stats: StatsSnapshot
    per_key: Mapping[MetricKey, StatsSnapshot] = field(
        default_factory=lambda: MappingProxyType({})
    )
    checks: Mapping[str, Tuple[int, int]] = field(
        default_factory=lambda: MappingProxyType({})
    )  # check name -> (passes, fails)

    def select(self, labels: Optional[Dict[str, str]] = None) -> StatsSnapshot:
        """Return global stats, or the merged stats of keys matching *labels*."""
        if not labels:
            return self.global_stats
        matching = [
            stats
            for key, stats in self.per_key.items()
            if all(getattr(key, name, None) == value for name, value in labels.items())
        ]
        return StatsSnapshot.merge(matching)

    @property
    def check_totals(self) -> Tuple[int, int]:
        passes = sum(p for p, _ in self.checks.values())
        fails = sum(f for _, f in self.checks.values())
        return passes, fails


class _Accumulator:
    __slots__ = ("count", "error_count", "failed_requests", "samples", "check_passes", "check_fails")

    def __init__(self) -> None:
        self.count = 0
        self.error_count = 0
        self.failed_requests = 0
        self.samples: List[float] = []
        self.check_passes = 0
        self.check_fails = 0

    def add(self, outcome: Outcome) -> None:
        self.count += 1
        if outcome.is_error:
            self.error_count += 1
        if outcome.is_failed_request:
            self.failed_requests += 1
        if outcome.latency_ms is not None:
            self.samples.append(outcome.latency_ms)
        self.check_passes += len(outcome.passed_checks)
        self.check_fails += len(outcome.failed_checks)

    def freeze(self) -> StatsSnapshot:
        return StatsSnapshot(
            count=self.count,
            error_count=self.error_count,
            failed_requests=self.failed_requests,
            samples=tuple(sorted(self.samples)),
            check_passes=self.check_passes,
            check_fails=self.check_fails,
        )


class MetricSink:
    """Aggregates outcomes per (service, endpoint) and globally.

    ``record`` may be called from any number of workers, including threads.
    All samples are retained, so percentiles reflect the whole run.
    """

    def __init__(self, snapshot_timeout: float = 1.0) -> None:
        self._lock = threading.Lock()
        self._snapshot_timeout = snapshot_timeout
        self._global = _Accumulator()
        self._per_key: Dict[MetricKey, _Accumulator] = {}
        self._checks: Dict[str, List[int]] = {}

    def record(self, key: MetricKey, outcome: Outcome) -> None:
        with self._lock:
            self._add(key, outcome)

    def record_many(self, recorded: Iterable[Tuple[MetricKey, Outcome]]) -> int:
        """Record a batch under one lock acquisition. Returns the batch size."""
        n = 0
        with self._lock:
            for key, outcome in recorded:
                self._add(key, outcome)
                n += 1
        return n

    def _add(self, key: MetricKey, outcome: Outcome) -> None:
        acc = self._per_key.get(key)
        if acc is None:
            acc = self._per_key[key] = _Accumulator()
        acc.add(outcome)
        self._global.add(outcome)
        for name in outcome.passed_checks:
            self._checks.setdefault(name, [0, 0])[0] += 1
        for name in outcome.failed_checks:
            self._checks.setdefault(name, [0, 0])[1] += 1

    def snapshot(self) -> MetricsSnapshot:
        """Immutable view of everything recorded so far.

        Waits at most ``snapshot_timeout`` seconds for in-flight writers,
        then reads without the lock.
        """
        acquired = self._lock.acquire(timeout=self._snapshot_timeout)
        if not acquired:
            logger.warning("metric_snapshot_lock_timeout", timeout=self._snapshot_timeout)
        try:
            per_key = {key: acc.freeze() for key, acc in dict(self._per_key).items()}
            checks = {name: (tally[0], tally[1]) for name, tally in dict(self._checks).items()}
            global_stats = self._global.freeze()
        finally:
            if acquired:
                self._lock.release()
        return MetricsSnapshot(
            global_stats=global_stats,
            per_key=MappingProxyType(per_key),
            checks=MappingProxyType(checks),
        )
