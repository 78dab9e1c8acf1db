"""Motion / event timeline engine for sports video analysis."""
from timeline_core.cancellation import (
    CancellableTask,
    CancellationToken,
    TaskStatus,
)
from timeline_core.errors import (
    TimelineError,
    ThumbnailGenerationError,
    MetadataTimeoutError,
    InvalidDurationError,
    SeekError,
    SeekTimeoutError,
)
from timeline_core.media import (
    VideoMetadata,
    FrameSource,
    Rasterizer,
    SyntheticFrameSource,
    OpenCVFrameSource,
    OpenCVRasterizer,
    ResourceRegistry,
    SeekArbiter,
    seek_and_wait,
)
from timeline_core.frame_clock import FrameClock, FrameSample
from timeline_core.detections import (
    DetectionKind,
    PoseDetection,
    ObjectDetection,
    ProjectileDetection,
    DetectionMultiplexer,
)
from timeline_core.trajectory import TrajectoryTracker, TrajectoryPoint
from timeline_core.kinematics import KinematicsEngine, VelocitySample, speed_profile
from timeline_core.timeline import (
    TimelineEvent,
    TimelineEventModel,
    BoundaryAdjustment,
    EffectiveBoundaries,
    Edge,
    GestureOutcome,
    effective_boundaries,
)
from timeline_core.thumbnails import (
    ThumbnailSpriteGenerator,
    SpriteCache,
    SpriteStatus,
    CueEntry,
)
from timeline_core.pipeline import MotionTimelineEngine
