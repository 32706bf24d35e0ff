"""
Per-batch metrics sinks.

The engine never keeps counters of its own; a sink is passed in for each
batch so concurrent batches do not share mutable state.
"""

import threading
from collections import defaultdict
from typing import Dict, List


class MetricsSink:
    """Interface for counters and timing observations."""

    def increment(self, name: str, value: int = 1) -> None:
        raise NotImplementedError

    def observe(self, name: str, value: float) -> None:
        raise NotImplementedError


class NullMetricsSink(MetricsSink):
    """Discards everything."""

    def increment(self, name: str, value: int = 1) -> None:
        pass

    def observe(self, name: str, value: float) -> None:
        pass


class InMemoryMetricsSink(MetricsSink):
    """Thread-safe sink that keeps everything in memory (tests, CLI summary)."""

    def __init__(self):
        self._lock = threading.Lock()
        self.counters: Dict[str, int] = defaultdict(int)
        self.observations: Dict[str, List[float]] = defaultdict(list)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self.observations[name].append(value)

    def snapshot(self) -> Dict:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "observations": {
                    name: {
                        "count": len(values),
                        "total": sum(values),
                        "max": max(values),
                    }
                    for name, values in self.observations.items() if values
                },
            }
