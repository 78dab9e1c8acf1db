"""
================================================================================
FRAME CLOCK MODULE
================================================================================
Converts playback time to frame indices and auto-detects the playback rate.

Detection samples frame-presentation callbacks once playback starts:

    1. Collect up to `sample_count` callbacks (wall time, media time,
       presented-frame counter)
    2. Estimate frames / elapsed wall time
    3. Once `refine_min_samples` exist, prefer frames / elapsed media time,
       which is independent of playback speed
    4. Snap to the nearest canonical rate to suppress scheduler jitter

If the source has no frame callbacks, or the video ends before enough
samples arrive, the clock silently keeps the default rate.
================================================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from configs.config import FrameClockConfig
from timeline_core.cancellation import CancellableTask, CancellationToken
from timeline_core.media import FrameCallbackInfo, FrameSource

logger = logging.getLogger(__name__)


@dataclass
class FrameSample:
    """One frame-presentation callback."""
    wall_time: float
    media_time: float
    presented_frames: int


def snap_to_rate(raw_fps: float, rates: Sequence[int]) -> int:
    """Return the canonical rate closest to raw_fps (lower rate wins ties)."""
    return min(rates, key=lambda rate: (abs(rate - raw_fps), rate))


class FrameClock:
    """
    Playback time -> frame index conversion with FPS auto-detection.

    Example:
        >>> clock = FrameClock()
        >>> clock.frame_at(1.5)
        45
        >>> task = clock.start_detection(source)
        >>> await task.wait()
        60
    """

    def __init__(self, config: Optional[FrameClockConfig] = None):
        self.config = config or FrameClockConfig()
        self.fps: int = self.config.default_fps
        self.detected = False
        self._task: Optional[CancellableTask] = None

    # ------------------------------------------------------------------
    # Frame math
    # ------------------------------------------------------------------

    def frame_at(self, timestamp: float) -> int:
        return max(0, int(round(timestamp * self.fps)))

    def time_at(self, frame: int) -> float:
        return frame / self.fps

    def snap_fps(self, raw_fps: float) -> int:
        return snap_to_rate(raw_fps, self.config.canonical_rates)

    def estimate_fps(self, samples: Sequence[FrameSample]) -> int:
        """
        Estimate the playback rate from presentation samples.

        Frame counts come from the presented-frame counter, so callbacks the
        consumer missed do not skew the estimate.

        Returns:
            Canonical FPS, or the default when the samples carry no timing
        """
        if len(samples) < 2:
            return self.config.default_fps

        first, last = samples[0], samples[-1]
        frames = last.presented_frames - first.presented_frames
        if frames <= 0:
            return self.config.default_fps

        raw = None
        wall_elapsed = last.wall_time - first.wall_time
        if wall_elapsed > 0:
            raw = frames / wall_elapsed

        media_elapsed = last.media_time - first.media_time
        if len(samples) >= self.config.refine_min_samples and media_elapsed > 0:
            raw = frames / media_elapsed

        if raw is None:
            return self.config.default_fps
        return self.snap_fps(raw)

    def reset(self) -> None:
        self.cancel_detection()
        self.fps = self.config.default_fps
        self.detected = False

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def start_detection(self, source: FrameSource) -> CancellableTask:
        """Start (or restart) detection for a source in the background."""
        self.cancel_detection()
        self._task = CancellableTask(
            lambda token: self.detect(source, token), name="fps-detection"
        )
        return self._task

    def cancel_detection(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def detect(
        self,
        source: FrameSource,
        token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Detect the playback rate of a source.

        Waits for playback to start, then samples frame callbacks. Never
        raises for detection problems; the default rate is kept instead.
        """
        token = token or CancellationToken()

        if not getattr(source, "supports_frame_callbacks", False):
            logger.debug("Frame callbacks unavailable, using default %d FPS",
                         self.config.default_fps)
            self.fps = self.config.default_fps
            self.detected = False
            return self.fps

        await self._wait_for_play(source)

        samples: List[FrameSample] = []
        while len(samples) < self.config.sample_count:
            token.raise_if_cancelled()
            if source.ended:
                break
            sample = await self._next_frame(source)
            if sample is None:
                break
            samples.append(sample)

        if len(samples) < self.config.sample_count:
            logger.debug(
                "FPS detection incomplete (%d/%d samples), keeping %d FPS",
                len(samples), self.config.sample_count, self.config.default_fps,
            )
            self.fps = self.config.default_fps
            self.detected = False
            return self.fps

        self.fps = self.estimate_fps(samples)
        self.detected = True
        logger.info("Detected video FPS: %d", self.fps)
        return self.fps

    async def _wait_for_play(self, source: FrameSource) -> None:
        if not source.paused:
            return
        loop = asyncio.get_running_loop()
        started = loop.create_future()

        def on_play(*_args) -> None:
            if not started.done():
                started.set_result(None)

        source.add_listener("play", on_play)
        try:
            await started
        finally:
            source.remove_listener("play", on_play)

    async def _next_frame(self, source: FrameSource) -> Optional[FrameSample]:
        loop = asyncio.get_running_loop()
        presented = loop.create_future()

        def on_frame(now: float, info: FrameCallbackInfo) -> None:
            if not presented.done():
                presented.set_result(
                    FrameSample(now, info.media_time, info.presented_frames)
                )

        def on_ended(*_args) -> None:
            if not presented.done():
                presented.set_result(None)

        handle = source.request_frame_callback(on_frame)
        source.add_listener("ended", on_ended)
        try:
            return await asyncio.wait_for(presented, self.config.frame_timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            source.cancel_frame_callback(handle)
            source.remove_listener("ended", on_ended)
