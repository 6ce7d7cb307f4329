"""Latency of the payment pipeline's I/O steps, per kind.

Kinds are ``<stage>.<step>``: ``gateway.query_status``,
``pendingpayment.get``, ``db.issue_tickets``, ``db.gate_wait``... A step
that raises (a provider timeout, a unique-key race) is counted under
``errors`` as well as timed, so a slow or flaky provider is visible on
``/api/admin/timings`` without reading logs.
"""
from __future__ import annotations
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict, List

# samples kept per kind
WINDOW = 1000


def _percentile(ordered: List[float], q: float) -> float:
    # nearest rank
    idx = max(0, min(len(ordered) - 1, int(round(q * len(ordered))) - 1))
    return ordered[idx]


class Timings:
    # single event loop: no locks
    def __init__(self, window: int = WINDOW) -> None:
        self.window = window
        self._samples: Dict[str, Deque[float]] = {}
        self._calls: Dict[str, int] = {}
        self._errors: Dict[str, int] = {}

    def record(self, kind: str, seconds: float, failed: bool = False) -> None:
        samples = self._samples.get(kind)
        if samples is None:
            samples = self._samples[kind] = deque(maxlen=self.window)
        samples.append(float(seconds))
        self._calls[kind] = self._calls.get(kind, 0) + 1
        if failed:
            self._errors[kind] = self._errors.get(kind, 0) + 1

    @asynccontextmanager
    async def measure(self, kind: str) -> AsyncIterator[None]:
        t0 = time.perf_counter()
        failed = True
        try:
            yield
            failed = False
        finally:
            self.record(kind, time.perf_counter() - t0, failed=failed)

    def snapshot(self) -> List[Dict]:
        out = []
        for kind in sorted(self._samples):
            ordered = sorted(self._samples[kind])
            stage, _, step = kind.partition(".")
            out.append({
                "kind": kind,
                "stage": stage,
                "step": step,
                "calls": self._calls[kind],
                "errors": self._errors.get(kind, 0),
                "p50_ms": _percentile(ordered, 0.50) * 1000,
                "p95_ms": _percentile(ordered, 0.95) * 1000,
                "max_ms": ordered[-1] * 1000,
            })
        return out

    def reset(self) -> None:
        self._samples.clear()
        self._calls.clear()
        self._errors.clear()


TIMINGS = Timings()


def timeit(kind: str):
    """async with timeit("gateway.query_status"): ..."""
    return TIMINGS.measure(kind)
