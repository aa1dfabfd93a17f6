from __future__ import annotations

import pytest

from listen_sync.clock import ClockEstimator, trimmed_median


class FakeTimer:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _probe_with_rtts(timer: FakeTimer, rtts: list[float | None], server_ms: int = 1_500):
    async def probe() -> int:
        rtt = rtts.pop(0)
        if rtt is None:
            raise ConnectionError("directory unreachable")
        timer.now += rtt
        return server_ms

    return probe


def test_trimmed_median_drops_extremes() -> None:
    assert trimmed_median([5.0, 10.0, 15.0, 20.0, 500.0]) == 15.0
    assert trimmed_median([7.0, 9.0]) == 8.0


@pytest.mark.asyncio
async def test_measure_latency_trims_outliers_and_averages_window() -> None:
    timer = FakeTimer()
    rtts: list[float | None] = [10, 20, 30, 40, 1000, 50, 50, 50, 50, 50]
    estimator = ClockEstimator(_probe_with_rtts(timer, rtts), local_clock=lambda: 1_000.0, timer=timer)

    first = await estimator.measure_latency()
    second = await estimator.measure_latency()

    assert first == 15.0
    assert second == pytest.approx((15.0 + 25.0) / 2)
    assert estimator.samples == [15.0, 25.0]


@pytest.mark.asyncio
async def test_authoritative_now_adds_offset_and_latency() -> None:
    timer = FakeTimer()
    estimator = ClockEstimator(
        _probe_with_rtts(timer, [100] * 5, server_ms=1_500),
        local_clock=lambda: 1_000.0,
        timer=timer,
    )

    await estimator.measure_latency()

    assert estimator.server_offset_ms == 500.0
    assert estimator.latency_ms == 50.0
    assert estimator.authoritative_now() == 1_550


@pytest.mark.asyncio
async def test_failed_probes_fall_back_to_default_latency() -> None:
    timer = FakeTimer()
    estimator = ClockEstimator(
        _probe_with_rtts(timer, [None, None, None, None, None]),
        default_latency_ms=50.0,
        timer=timer,
    )

    latency = await estimator.measure_latency()

    assert latency == 50.0
    assert estimator.samples == []


@pytest.mark.asyncio
async def test_total_probe_failure_keeps_last_estimate() -> None:
    timer = FakeTimer()
    rtts: list[float | None] = [20, 20, 20, 20, 20, None, None, None, None, None]
    estimator = ClockEstimator(_probe_with_rtts(timer, rtts), timer=timer)

    await estimator.measure_latency()
    latency = await estimator.measure_latency()

    assert latency == 10.0
    assert estimator.samples == [10.0]


@pytest.mark.asyncio
async def test_single_failed_probe_counts_as_default_sample() -> None:
    timer = FakeTimer()
    rtts: list[float | None] = [20, None, 20, 20, 20]
    estimator = ClockEstimator(_probe_with_rtts(timer, rtts), default_latency_ms=50.0, timer=timer)

    latency = await estimator.measure_latency()

    # Samples 10, 50, 10, 10, 10 -> trimmed 10, 10, 10.
    assert latency == 10.0
