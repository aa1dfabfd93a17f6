"""Latency estimation and the shared notion of "authoritative now".

Every client measures round trips to the session directory, trims the
fastest and slowest probe of each batch, and keeps a rolling mean of the
batch medians. Adding that latency and the last observed server offset to the
local wall clock gives a timestamp that is comparable across clients without
NTP-grade infrastructure.
"""

from __future__ import annotations

import logging
import statistics
import time
from collections import deque
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

LocalClock = Callable[[], float]
Probe = Callable[[], Awaitable[int]]


def wall_clock_ms() -> float:
    return time.time() * 1000.0


def trimmed_median(samples: list[float]) -> float:
    """Median after dropping the single smallest and largest sample."""

    ordered = sorted(samples)
    if len(ordered) > 2:
        ordered = ordered[1:-1]
    return statistics.median(ordered)


class ClockEstimator:
    """Smoothed one-way latency and server offset for one client."""

    def __init__(
        self,
        probe: Probe,
        *,
        probe_count: int = 5,
        window: int = 10,
        default_latency_ms: float = 50.0,
        local_clock: LocalClock = wall_clock_ms,
        timer: LocalClock | None = None,
    ) -> None:
        self._probe = probe
        self._probe_count = probe_count
        self._default_latency_ms = default_latency_ms
        self._local_clock = local_clock
        self._timer = timer or (lambda: time.perf_counter() * 1000.0)
        self._medians: deque[float] = deque(maxlen=window)
        self._latency_ms = default_latency_ms
        self._server_offset_ms = 0.0

    @property
    def latency_ms(self) -> float:
        return self._latency_ms

    @property
    def server_offset_ms(self) -> float:
        return self._server_offset_ms

    @property
    def samples(self) -> list[float]:
        return list(self._medians)

    def local_now(self) -> float:
        return self._local_clock()

    def authoritative_now(self) -> int:
        """Local clock corrected by server offset and one-way latency (ms)."""

        return int(round(self._local_clock() + self._server_offset_ms + self._latency_ms))

    def observe_server_time(self, server_ms: int, *, received_at: float | None = None) -> None:
        """Refresh the offset from a server-stamped response."""

        local = received_at if received_at is not None else self._local_clock()
        self._server_offset_ms = server_ms - local

    async def measure_latency(self) -> float:
        """Run one probe batch and fold its trimmed median into the window."""

        samples: list[float] = []
        failures = 0
        for _ in range(self._probe_count):
            started = self._timer()
            try:
                server_ms = await self._probe()
            except Exception as exc:  # pylint: disable=broad-except
                failures += 1
                logger.debug("Latency probe failed: %s", exc)
                samples.append(self._default_latency_ms)
                continue
            rtt = max(0.0, self._timer() - started)
            samples.append(rtt / 2.0)
            self.observe_server_time(server_ms)

        if failures == self._probe_count:
            logger.warning("All %d latency probes failed; keeping %.1fms", failures, self._latency_ms)
            return self._latency_ms

        self._medians.append(trimmed_median(samples))
        self._latency_ms = round(statistics.fmean(self._medians), 3)
        return self._latency_ms
