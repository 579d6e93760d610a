# boxoffice/infra/timings.py
from __future__ import annotations
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List
import statistics

from loguru import logger

# ------------ hot path: append only ------------
# one bounded window per kind; no locks, single-threaded event loop
WINDOW = 2048
_TIMINGS: Dict[str, Deque[float]] = {}


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    window = _TIMINGS.get(kind)
    if window is None:
        window = deque(maxlen=WINDOW)
        _TIMINGS[kind] = window
    window.append(float(value))


class timeit:
    """async usage:
        async with timeit("orders.claim"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


# ------------ stats only on demand ------------

def _mean_std(values: Iterable[float]) -> tuple[float, float]:
    values = list(values)
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def summary() -> List[Dict[str, Any]]:
    # one record per kind over its latest WINDOW samples
    out = []
    for kind, vals in sorted(_TIMINGS.items()):
        mean, std = _mean_std(vals)
        out.append({"kind": kind, "n": len(vals), "mean": mean, "std": std})
    return out


def log_summary() -> None:
    for rec in summary():
        logger.info(
            "timing {kind}: n={n} mean={mean:.6f}s std={std:.6f}s", **rec
        )
