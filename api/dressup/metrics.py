from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Dict


_lock = threading.Lock()
_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
_timers: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))


def increment(metric: str, label: str, value: int = 1) -> None:
    with _lock:
        _counters[metric][label] += value


def observe_latency(metric: str, label: str, duration_seconds: float) -> None:
    with _lock:
        _timers[metric]["sum"] += duration_seconds
        _timers[metric]["count"] += 1
        _timers[metric + ":per_label"][label] += duration_seconds


def snapshot() -> Dict[str, Dict[str, float]]:
    with _lock:
        counters_copy = {k: dict(v) for k, v in _counters.items()}
        timers_copy = {k: dict(v) for k, v in _timers.items()}
    return {"counters": counters_copy, "timers": timers_copy}


def reset() -> None:
    with _lock:
        _counters.clear()
        _timers.clear()


class Timer:
    """Measures a block and records it under ``metric``/``label`` on exit."""

    def __init__(self, metric: str, label: str) -> None:
        self.metric = metric
        self.label = label
        self.start = time.perf_counter()
        self.elapsed_ms = 0.0

    def stop(self) -> float:
        duration = time.perf_counter() - self.start
        self.elapsed_ms = round(duration * 1000, 2)
        observe_latency(self.metric, self.label, duration)
        return self.elapsed_ms

    def __enter__(self) -> "Timer":
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        self.stop()
