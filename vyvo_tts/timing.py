"""
Lightweight wall-clock timing for hot paths.

Decorate a function with ``@track_time("name")`` and read the aggregated
numbers back with ``get_timing_stats()`` (exposed by the debug endpoints).
"""
from __future__ import annotations
from typing import Any, Callable, Dict, TypeVar
import functools
import threading
import time

F = TypeVar("F", bound=Callable[..., Any])

_lock = threading.Lock()
_stats: Dict[str, Dict[str, float]] = {}


def _empty() -> Dict[str, float]:
    return {
        "count": 0,
        "total_time": 0.0,
        "min_time": float("inf"),
        "max_time": float("-inf"),
    }


def record(name: str, elapsed: float) -> None:
    with _lock:
        data = _stats.setdefault(name, _empty())
        data["count"] += 1
        data["total_time"] += elapsed
        data["min_time"] = min(data["min_time"], elapsed)
        data["max_time"] = max(data["max_time"], elapsed)


def track_time(name: str) -> Callable[[F], F]:
    """Record the duration of every call under ``name``, including failed calls."""
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                record(name, time.perf_counter() - start)
        return wrapper  # type: ignore[return-value]
    return decorator


def get_timing_stats() -> Dict[str, Dict[str, float]]:
    """Snapshot of the collected statistics."""
    with _lock:
        return {name: dict(data) for name, data in _stats.items()}


def reset_timing_stats() -> None:
    with _lock:
        _stats.clear()
