"""
Insight Infrastructure: Latency Tracker

Rolling per-operation latency statistics. The orchestrator records provider
calls here ("provider:<feature>") and the evaluation harness records policy
evaluations ("policy_eval") to report avg/p95 latency.
"""

import math
import time
import logging
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class LatencyMeasurement:
    operation: str
    duration_ms: float
    recorded_at: float                      # epoch seconds
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LatencyStats:
    """Aggregated latency statistics for an operation"""
    operation: str
    count: int
    total_ms: float
    min_ms: float
    max_ms: float
    mean_ms: float
    p50_ms: float
    p95_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def percentile(values: Sequence[float], p: float) -> float:
    """
    Nearest-rank percentile: element at floor(p/100 * n) of the sorted values.

    Args:
        values: Samples (any order)
        p: Percentile in 0..100
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = min(len(ordered) - 1, max(0, int(math.floor(p / 100 * len(ordered)))))
    return ordered[idx]


class LatencyTracker:
    """
    Per-operation latency samples kept in a rolling window.

    Usage:
        with tracker.measure("provider:overview_pulse", {"provider": "openai"}):
            result = await client.generate(request)
    """

    def __init__(self, retention_per_operation: int = 500):
        self.retention_per_operation = retention_per_operation
        self._measurements: Dict[str, Deque[LatencyMeasurement]] = defaultdict(
            lambda: deque(maxlen=retention_per_operation)
        )

    @contextmanager
    def measure(self, operation: str, metadata: Optional[Dict[str, Any]] = None) -> Iterator[None]:
        start = time.perf_counter()
        failed = False
        try:
            yield
        except BaseException:
            failed = True
            raise
        finally:
            meta = dict(metadata or {})
            if failed:
                meta["failed"] = True
            self.record(operation, (time.perf_counter() - start) * 1000.0, meta)

    def record(self, operation: str, duration_ms: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._measurements[operation].append(
            LatencyMeasurement(
                operation=operation,
                duration_ms=duration_ms,
                recorded_at=time.time(),
                metadata=metadata or {},
            )
        )

    def durations(self, operation: str) -> List[float]:
        return [m.duration_ms for m in self._measurements.get(operation, ())]

    def last(self, operation: str) -> Optional[LatencyMeasurement]:
        samples = self._measurements.get(operation)
        return samples[-1] if samples else None

    def get_stats(self, operation: str) -> Optional[LatencyStats]:
        durations = self.durations(operation)
        if not durations:
            return None
        return LatencyStats(
            operation=operation,
            count=len(durations),
            total_ms=sum(durations),
            min_ms=min(durations),
            max_ms=max(durations),
            mean_ms=sum(durations) / len(durations),
            p50_ms=percentile(durations, 50),
            p95_ms=percentile(durations, 95),
        )

    def get_all_stats(self) -> Dict[str, LatencyStats]:
        return {
            op: stats
            for op in list(self._measurements)
            if (stats := self.get_stats(op)) is not None
        }

    def clear(self, operation: Optional[str] = None) -> None:
        if operation:
            self._measurements.pop(operation, None)
        else:
            self._measurements.clear()

    def summarize(self) -> str:
        all_stats = self.get_all_stats()
        if not all_stats:
            return "No latency measurements recorded"

        lines = [f"{'Operation':<40} {'Count':>8} {'Mean':>10} {'P95':>10}"]
        for operation in sorted(all_stats):
            stats = all_stats[operation]
            lines.append(
                f"{operation:<40} {stats.count:>8} {stats.mean_ms:>8.2f}ms {stats.p95_ms:>8.2f}ms"
            )
        return "\n".join(lines)
