from __future__ import annotations

import asyncio

from configs.config import FrameClockConfig
from timeline_core.cancellation import TaskStatus
from timeline_core.frame_clock import FrameClock, FrameSample, snap_to_rate
from timeline_core.media import SyntheticFrameSource


def _samples(interval: float, count: int) -> list[FrameSample]:
    return [FrameSample(i * interval, i * interval, i + 1) for i in range(count)]


def test_frame_at_rounds_time_times_fps() -> None:
    clock = FrameClock()
    assert clock.fps == 30
    assert clock.frame_at(1.5) == 45
    assert clock.frame_at(0.049) == 1
    assert clock.frame_at(-0.2) == 0
    assert clock.time_at(45) == 1.5


def test_snap_to_rate_picks_nearest_canonical_rate() -> None:
    rates = FrameClockConfig().canonical_rates
    assert snap_to_rate(59.7, rates) == 60
    assert snap_to_rate(23.9, rates) == 24
    assert snap_to_rate(118.0, rates) == 120
    assert snap_to_rate(27.5, rates) == 25


def test_estimate_fps_from_fixed_interval_samples() -> None:
    clock = FrameClock()
    assert clock.estimate_fps(_samples(1 / 60, 30)) == 60
    assert clock.estimate_fps(_samples(1 / 25, 30)) == 25


def test_estimate_fps_uses_presented_counter_for_missed_callbacks() -> None:
    clock = FrameClock()
    samples = [FrameSample(i * 3 / 60, i * 3 / 60, 1 + i * 3) for i in range(30)]
    assert clock.estimate_fps(samples) == 60


def test_estimate_fps_without_timing_keeps_default() -> None:
    clock = FrameClock()
    assert clock.estimate_fps([]) == 30
    assert clock.estimate_fps([FrameSample(0.0, 0.0, 1)]) == 30
    assert clock.estimate_fps([FrameSample(0.0, 0.0, 1), FrameSample(0.0, 0.0, 1)]) == 30


def test_detect_converges_to_60_from_synthetic_callbacks() -> None:
    async def run() -> int:
        source = SyntheticFrameSource(duration=60.0, fps=60, jitter=0.002)
        clock = FrameClock()
        task = clock.start_detection(source)
        source.play()
        fps = await task.wait()
        source.pause()
        assert clock.detected
        assert source.pending_frame_callbacks == 0
        assert source.listener_count() == 0
        return fps

    assert asyncio.run(run()) == 60


def test_detect_uses_media_time_when_playback_rate_differs() -> None:
    async def run() -> int:
        source = SyntheticFrameSource(duration=60.0, fps=25, playback_rate=2.0)
        clock = FrameClock()
        task = clock.start_detection(source)
        source.play()
        fps = await task.wait()
        source.pause()
        return fps

    assert asyncio.run(run()) == 25


def test_detect_without_frame_callbacks_falls_back_to_default() -> None:
    async def run() -> FrameClock:
        source = SyntheticFrameSource(duration=5.0, fps=60, supports_frame_callbacks=False)
        clock = FrameClock()
        assert await clock.detect(source) == 30
        return clock

    clock = asyncio.run(run())
    assert clock.fps == 30
    assert not clock.detected


def test_detect_degrades_when_video_ends_early() -> None:
    async def run() -> FrameClock:
        source = SyntheticFrameSource(duration=0.2, fps=60)
        clock = FrameClock()
        task = clock.start_detection(source)
        source.play()
        assert await task.wait() == 30
        assert source.ended
        assert source.listener_count("ended") == 0
        return clock

    clock = asyncio.run(run())
    assert clock.fps == 30
    assert not clock.detected


def test_cancelled_detection_detaches_listeners() -> None:
    async def run() -> None:
        source = SyntheticFrameSource(duration=5.0, fps=60)
        clock = FrameClock()
        task = clock.start_detection(source)
        await asyncio.sleep(0)
        assert source.listener_count("play") == 1

        task.cancel()
        task.cancel()
        assert await task.wait() is None
        assert task.status == TaskStatus.CANCELLED
        assert source.listener_count() == 0
        assert clock.fps == 30

    asyncio.run(run())
