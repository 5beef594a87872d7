"""
Process-local counters and gauges for the orchestrator and catalog synchronizer.

Series are keyed by metric name plus a sorted label tuple, so
`increment_counter("x", a="1", b="2")` and `increment_counter("x", b="2", a="1")`
land on the same series. Tests read values back through `counter_value` /
`counter_total` and clear everything with `reset_for_tests`.
"""
from __future__ import annotations

from threading import Lock
from typing import Dict, Tuple

Series = Tuple[str, Tuple[Tuple[str, str], ...]]


class _Metrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self.counters: Dict[Series, int] = {}
        self.gauges: Dict[Series, float] = {}

    @staticmethod
    def series(name: str, labels: dict) -> Series:
        return name, tuple(sorted((str(k), str(v)) for k, v in labels.items()))

    def add(self, name: str, amount: int, labels: dict) -> None:
        key = self.series(name, labels)
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + amount

    def shift(self, name: str, delta: float, labels: dict) -> None:
        key = self.series(name, labels)
        with self._lock:
            # Gauges track in-flight work and never go negative.
            self.gauges[key] = max(0.0, self.gauges.get(key, 0.0) + float(delta))

    def clear(self) -> None:
        with self._lock:
            self.counters.clear()
            self.gauges.clear()


_metrics = _Metrics()


def increment_counter(name: str, *, amount: int = 1, **labels: str) -> None:
    if amount:
        _metrics.add(name, amount, labels)


def adjust_gauge(name: str, delta: float, **labels: str) -> None:
    _metrics.shift(name, delta, labels)


def counter_value(name: str, **labels: str) -> int:
    """Value of one counter series; 0 when it was never incremented."""
    return _metrics.counters.get(_Metrics.series(name, labels), 0)


def counter_total(name: str) -> int:
    """Sum over every label set recorded for `name`."""
    return sum(value for (metric, _), value in list(_metrics.counters.items()) if metric == name)


def gauge_value(name: str, **labels: str) -> float:
    return _metrics.gauges.get(_Metrics.series(name, labels), 0.0)


def reset_for_tests() -> None:
    _metrics.clear()
