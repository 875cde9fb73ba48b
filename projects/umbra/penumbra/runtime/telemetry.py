"""
Per-stage timing for the mask filter.

Each named stage (``preprocess``, ``infer``, ``extract``, ``postprocess``, ...)
gets a :class:`Meter` that keeps an exponential moving average and a bounded
window for percentiles. Meters are updated from the worker thread and read
from the producer side, so every meter guards its state with a lock.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, List, Optional

_perf = time.perf_counter_ns


class Meter:
    def __init__(self, alpha: float = 0.2, window: int = 512) -> None:
        self._alpha = float(alpha)
        self._ema: Optional[float] = None
        self._window: Deque[float] = deque(maxlen=max(1, int(window)))
        self._count = 0
        self._lock = threading.Lock()

    def add(self, value_ms: float) -> None:
        value = float(value_ms)
        with self._lock:
            self._ema = value if self._ema is None else self._alpha * value + (1.0 - self._alpha) * self._ema
            self._window.append(value)
            self._count += 1

    @contextmanager
    def span(self) -> Iterator[None]:
        t0 = _perf()
        try:
            yield
        finally:
            self.add((_perf() - t0) / 1e6)

    def ema_ms(self) -> float:
        with self._lock:
            return round(0.0 if self._ema is None else float(self._ema), 3)

    def percentile_ms(self, q: float) -> float:
        with self._lock:
            if not self._window:
                return 0.0
            arr = sorted(self._window)
        k = max(0, min(len(arr) - 1, int((q / 100.0) * (len(arr) - 1))))
        return round(float(arr[k]), 3)

    def p95_ms(self) -> float:
        return self.percentile_ms(95.0)

    def count(self) -> int:
        with self._lock:
            return self._count


class Telemetry:
    def __init__(self) -> None:
        self._meters: Dict[str, Meter] = {}
        self._lock = threading.Lock()

    def meter(self, name: str) -> Meter:
        with self._lock:
            meter = self._meters.get(name)
            if meter is None:
                meter = Meter()
                self._meters[name] = meter
            return meter

    def span(self, name: str):  # type: ignore[no-untyped-def]
        return self.meter(name).span()

    def names(self) -> List[str]:
        with self._lock:
            return list(self._meters)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        """{stage: {"ema_ms", "p95_ms", "count"}} for every stage seen so far."""
        out: Dict[str, Dict[str, float]] = {}
        for name in self.names():
            meter = self.meter(name)
            out[name] = {"ema_ms": meter.ema_ms(), "p95_ms": meter.p95_ms(), "count": float(meter.count())}
        return out

    def reset(self) -> None:
        with self._lock:
            self._meters.clear()
