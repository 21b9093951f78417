# ticketmint/infra/timings.py
from __future__ import annotations
import statistics
import time
from typing import Dict, List


class Timings:
    """Per-kind latency samples, append-only on the hot path.

    async usage:
        async with timings.timeit("ledger.current_owner"):
            await fn()
    """

    def __init__(self) -> None:
        # one list per kind; no locks, single-threaded event loop
        self._samples: Dict[str, List[float]] = {}

    def record(self, kind: str, value: float) -> None:
        lst = self._samples.get(kind)
        if lst is None:
            lst = []
            self._samples[kind] = lst
        lst.append(float(value))

    def timeit(self, kind: str) -> "timeit":
        return timeit(self, kind)

    def aggregates(self) -> List[Dict[str, float]]:
        # stats computed only when asked for
        out = []
        for kind, vals in sorted(self._samples.items()):
            n = len(vals)
            mean = statistics.mean(vals) if vals else 0.0
            std = statistics.stdev(vals) if n > 1 else 0.0
            out.append({
                "kind": kind, "n": n, "mean": mean, "std": std,
                "max": max(vals) if vals else 0.0,
            })
        return out

    def clear(self) -> None:
        self._samples.clear()


class timeit:
    __slots__ = ("_timings", "_kind", "_t0")

    def __init__(self, timings: Timings, kind: str):
        self._timings = timings
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._timings.record(self._kind, time.perf_counter() - self._t0)
