"""
================================================================================
MOTION TIMELINE ENGINE
================================================================================
Wires the components together for one video source:

    playback time -> FrameClock -> frame index
    detections    -> DetectionMultiplexer -> TrajectoryTracker -> KinematicsEngine

TimelineEventModel and ThumbnailSpriteGenerator consume the same source
independently. Seeks on the shared source (user scrubbing, timeline clicks,
thumbnail tiles) all go through one SeekArbiter.

Everything here runs on a single asyncio event loop; attach_source() must be
called from inside it.
================================================================================
"""

import asyncio
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from configs.config import EngineConfig
from timeline_core.detections import DetectionKind, DetectionMultiplexer, DetectionResult, PoseDetection
from timeline_core.frame_clock import FrameClock
from timeline_core.kinematics import KinematicsEngine
from timeline_core.media import FrameSource, Rasterizer, ResourceRegistry, SeekArbiter, seek_and_wait
from timeline_core.thumbnails import ThumbnailSpriteGenerator
from timeline_core.timeline import TimelineEvent, TimelineEventModel
from timeline_core.trajectory import TrajectoryTracker

logger = logging.getLogger(__name__)


class MotionTimelineEngine:
    """
    Engine-owned state for one active video.

    Example:
        >>> engine = MotionTimelineEngine()
        >>> engine.attach_source(source)
        >>> engine.on_detection(pose_result)
        >>> engine.overlay_state()["velocities"]["right_wrist"]
        {'current': 12.4, 'peak': 18.9}
    """

    SCRUB_OWNER = "scrub"

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[ResourceRegistry] = None,
        rasterizer: Optional[Rasterizer] = None,
    ):
        self.config = config or EngineConfig()
        self.registry = registry or ResourceRegistry()
        self.arbiter = SeekArbiter()

        self.frame_clock = FrameClock(self.config.frame_clock)
        self.detections = DetectionMultiplexer(self.config.detection)
        self.trajectories = TrajectoryTracker(self.config.trajectory)
        self.kinematics = KinematicsEngine(self.config.kinematics)

        # Lazy-loaded components
        self._rasterizer = rasterizer
        self._thumbnails: Optional[ThumbnailSpriteGenerator] = None
        self._timeline: Optional[TimelineEventModel] = None

        self.source: Optional[FrameSource] = None
        self.current_time = 0.0
        self.current_frame = 0
        self.trajectories_enabled = True
        self._pending_seek: Optional[asyncio.Future] = None
        self._geometry_task: Optional[asyncio.Future] = None

    @property
    def thumbnails(self) -> ThumbnailSpriteGenerator:
        if self._thumbnails is None:
            self._thumbnails = ThumbnailSpriteGenerator(
                self.config.thumbnails,
                rasterizer=self._rasterizer,
                registry=self.registry,
                arbiter=self.arbiter,
            )
        return self._thumbnails

    @property
    def timeline(self) -> TimelineEventModel:
        if self._timeline is None:
            self._timeline = TimelineEventModel(
                config=self.config.timeline,
                frame_clock=self.frame_clock,
                on_seek=self._request_seek,
                on_preview=self._request_seek,
            )
        return self._timeline

    # ------------------------------------------------------------------
    # Source lifecycle
    # ------------------------------------------------------------------

    def attach_source(
        self,
        source: FrameSource,
        detect_fps: bool = True,
        generate_thumbnails: bool = True,
    ) -> None:
        """Switch to a new source, tearing down everything tied to the old one."""
        if self.source is not None and self.source.source_id != source.source_id:
            self.detach_source()
        self.source = source
        self.current_time = 0.0
        self.current_frame = 0

        if detect_fps:
            self.frame_clock.start_detection(source)
        if generate_thumbnails:
            self.thumbnails.ensure(source)

        # NaN leaves the timeline without geometry until metadata arrives
        duration = source.duration
        self.timeline.set_geometry(duration)
        if self._geometry_task is not None:
            self._geometry_task.cancel()
            self._geometry_task = None
        if not (math.isfinite(duration) and duration > 0):
            self._geometry_task = asyncio.ensure_future(self._load_geometry(source))
            self._geometry_task.add_done_callback(self._on_geometry_done)
        logger.debug("Attached source %s", source.source_id)

    async def _load_geometry(self, source: FrameSource) -> None:
        metadata = await asyncio.wait_for(
            source.wait_metadata(), self.config.thumbnails.metadata_timeout
        )
        if source is not self.source:
            return
        if math.isfinite(metadata.duration) and metadata.duration > 0:
            self.timeline.set_geometry(metadata.duration)
            logger.debug("Timeline duration %.2fs for %s", metadata.duration, source.source_id)
        else:
            logger.warning("Timeline editing unavailable: invalid duration %s", metadata.duration)

    def _on_geometry_done(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Timeline duration unavailable: %r", future.exception())

    def detach_source(self) -> None:
        self.frame_clock.reset()
        if self._geometry_task is not None:
            self._geometry_task.cancel()
            self._geometry_task = None
        if self._thumbnails is not None:
            self._thumbnails.release()
        if self._pending_seek is not None:
            self._pending_seek.cancel()
            self._pending_seek = None
        self.detections.clear()
        self.trajectories.clear()
        self.kinematics.reset()
        self.source = None

    # ------------------------------------------------------------------
    # Playback and detections
    # ------------------------------------------------------------------

    def on_time_update(self, time: float) -> int:
        """Playback clock tick. Returns the current frame index."""
        self.current_time = time
        self.current_frame = self.frame_clock.frame_at(time)
        return self.current_frame

    def on_detection(self, result: DetectionResult) -> bool:
        """
        Push one detection result.

        Returns:
            True if it was for a new frame of an enabled stream
        """
        is_new = self.detections.submit(result)
        if is_new and isinstance(result, PoseDetection) and self.trajectories_enabled:
            self.trajectories.update(result)
            if result.timestamp is not None:
                time = result.timestamp
            else:
                time = self.frame_clock.time_at(result.frame_idx)
            self.kinematics.update_from_pose(result, time, result.frame_idx)
        return is_new

    def replay_detections(self, results: Iterable[DetectionResult]) -> int:
        """Push a recorded stream in order. Returns the number of new frames."""
        return sum(1 for result in results if self.on_detection(result))

    def on_detection_error(self, kind: DetectionKind, error: BaseException) -> None:
        self.detections.report_error(kind, error)

    def on_seek(self, time: float) -> None:
        """
        The source finished seeking (user or programmatic).

        Detections for earlier frames are accepted again. Trajectories are
        cleared on a seek to the start or behind their newest point.
        """
        self.on_time_update(time)
        self.detections.rewind()
        self.kinematics.on_seek(time)
        latest = self.trajectories.latest_frame()
        if time <= self.config.kinematics.reset_epsilon_s or (
            latest is not None and self.current_frame < latest
        ):
            self.trajectories.clear()

    async def scrub_to(self, time: float) -> int:
        """Seek the shared source, waiting for any thumbnail seek in flight."""
        if self.source is None:
            raise RuntimeError("No source attached")
        async with self.arbiter.exclusive(self.SCRUB_OWNER):
            await seek_and_wait(self.source, time, self.config.thumbnails.seek_timeout)
        self.on_seek(time)
        return self.current_frame

    def _request_seek(self, time: float) -> None:
        if self.source is None:
            self.on_seek(time)
            return
        if self._pending_seek is not None and not self._pending_seek.done():
            self._pending_seek.cancel()
        self._pending_seek = asyncio.ensure_future(self.scrub_to(time))
        self._pending_seek.add_done_callback(self._on_seek_done)

    def _on_seek_done(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Timeline seek failed: %s", future.exception())

    # ------------------------------------------------------------------
    # Feature controls
    # ------------------------------------------------------------------

    def set_trajectories_enabled(self, enabled: bool) -> None:
        """Toggling trajectories either way starts a fresh session."""
        if enabled == self.trajectories_enabled:
            return
        self.trajectories_enabled = enabled
        self.trajectories.clear()
        self.kinematics.reset()

    def select_joints(self, joints: Iterable) -> None:
        """Joints may be COCO indices or keypoint names."""
        self.trajectories.select_joints(
            self.config.keypoints.resolve_joint(joint) for joint in joints
        )

    def load_events(self, events: Iterable[TimelineEvent]) -> None:
        self.timeline.load_events(events)

    # ------------------------------------------------------------------
    # Output for the rendering collaborator
    # ------------------------------------------------------------------

    def overlay_state(self) -> Dict[str, Any]:
        """Numbers the overlay renderer needs for the current frame."""
        trajectories: Dict[int, List[List[float]]] = {}
        if self.trajectories_enabled:
            trajectories = {
                joint: self.trajectories.display_path(joint).tolist()
                for joint in self.trajectories.selected_joints
            }

        detections = {}
        for kind in DetectionKind:
            snapshot = self.detections.latest(kind)
            detections[kind.value] = {
                "enabled": self.detections.is_enabled(kind),
                "frame": snapshot.frame_idx if snapshot else None,
                "staleness": self.detections.staleness(kind, self.current_frame),
                "error": self.detections.error(kind),
            }

        thumbnails = None
        if self._thumbnails is not None:
            cache = self._thumbnails.cache
            thumbnails = {
                "status": cache.status.value,
                "progress": cache.progress,
                "cue_handle": cache.cue_handle,
            }

        return {
            "time": self.current_time,
            "frame": self.current_frame,
            "fps": self.frame_clock.fps,
            "fps_detected": self.frame_clock.detected,
            "trajectories": trajectories,
            "velocities": {
                limb: {"current": sample.current, "peak": sample.peak}
                for limb, sample in self.kinematics.samples().items()
            },
            "detections": detections,
            "thumbnails": thumbnails,
        }
