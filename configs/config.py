"""
================================================================================
MOTION TIMELINE ENGINE CONFIGURATION
================================================================================
This configuration file centralizes all settings for the timeline engine.
Modify these values to customize behavior without touching core logic.

Project: Swing Timeline & Motion Overlay Engine
Consumes: pose / object / projectile detections produced elsewhere

CONFIGURATION SECTIONS:
    1. Frame Clock - FPS auto-detection and frame index math
    2. Keypoint Settings - COCO format keypoint definitions
    3. Detection Settings - Which detection streams are multiplexed
    4. Trajectory Settings - Bounded per-joint position history
    5. Kinematics Settings - Velocity derivation and calibration
    6. Timeline Settings - Event boundary editing
    7. Thumbnail Settings - Scrub-preview sprite sheets
================================================================================
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional


# ==============================================================================
# SECTION 1: FRAME CLOCK
# ==============================================================================
# Browsers (and most decoders) do not expose the nominal frame rate of a
# stream. We measure it from frame-presentation callbacks and snap the result
# to a known broadcast rate so scheduler jitter never leaks into frame math.
#
# Canonical Rates:
#   24 - cinema          50 - PAL high frame rate
#   25 - PAL             60 - phone slow-ish motion / NTSC HFR
#   30 - NTSC / phones  120 - phone slow motion
# ==============================================================================

@dataclass
class FrameClockConfig:
    """
    Frame rate detection configuration.

    Attributes:
        default_fps: Rate used until detection completes (and as fallback)
        sample_count: Frame callbacks collected before estimating
        refine_min_samples: Samples needed before media-time refinement
        canonical_rates: Rates the raw estimate is snapped to
        frame_timeout: Max seconds to wait for a single frame callback
    """
    default_fps: int = 30
    sample_count: int = 30
    refine_min_samples: int = 10
    canonical_rates: Tuple[int, ...] = (24, 25, 30, 50, 60, 120)
    frame_timeout: float = 1.0


# ==============================================================================
# SECTION 2: KEYPOINT DEFINITIONS (COCO FORMAT)
# ==============================================================================
# Pose detectors upstream (MoveNet, YOLO-Pose) emit 17 COCO keypoints.
#
# COCO 17-Keypoint Layout:
#   0: nose          5: left_shoulder   10: right_wrist   15: left_ankle
#   1: left_eye      6: right_shoulder  11: left_hip      16: right_ankle
#   2: right_eye     7: left_elbow      12: right_hip
#   3: left_ear      8: right_elbow     13: left_knee
#   4: right_ear     9: left_wrist      14: right_knee
# ==============================================================================

@dataclass
class KeypointConfig:
    """
    COCO keypoint names and joint lookup.

    For racket sports the interesting joints are the wrists (9, 10), which
    drive swing speed, and the knees/ankles for footwork trajectories.
    """

    num_keypoints: int = 17

    keypoint_names: Tuple[str, ...] = (
        "nose",           # 0
        "left_eye",       # 1
        "right_eye",      # 2
        "left_ear",       # 3
        "right_ear",      # 4
        "left_shoulder",  # 5
        "right_shoulder", # 6
        "left_elbow",     # 7
        "right_elbow",    # 8
        "left_wrist",     # 9  - swing speed
        "right_wrist",    # 10 - swing speed
        "left_hip",       # 11
        "right_hip",      # 12
        "left_knee",      # 13
        "right_knee",     # 14
        "left_ankle",     # 15
        "right_ankle",    # 16
    )

    def get_keypoint_index(self, name: str) -> int:
        """Get index for a keypoint by name."""
        return self.keypoint_names.index(name)

    def resolve_joint(self, joint) -> int:
        """Accept a COCO index or keypoint name ("9", 9, "left_wrist")."""
        if isinstance(joint, str) and not joint.strip().isdigit():
            return self.get_keypoint_index(joint.strip())
        index = int(joint)
        if not 0 <= index < self.num_keypoints:
            raise ValueError(f"Keypoint index out of range: {index}")
        return index


# ==============================================================================
# SECTION 3: DETECTION SETTINGS
# ==============================================================================
# Three independent inference streams feed the multiplexer. Each arrives at
# its own cadence; only the latest result per stream is kept.
# ==============================================================================

@dataclass
class DetectionConfig:
    """
    Detection stream configuration.

    Attributes:
        enabled_kinds: Streams enabled at startup ('pose', 'object', 'projectile')
        pose_confidence: A person must score above this to count towards
            its identity's running confidence
        object_confidence: Same gate for object boxes
        projectile_confidence: Same gate for ball positions
    """
    enabled_kinds: Tuple[str, ...] = ("pose",)
    pose_confidence: float = 0.3
    object_confidence: float = 0.5
    projectile_confidence: float = 0.5

    def min_confidence(self, kind: str) -> float:
        """Gate for one stream ('pose', 'object' or 'projectile')."""
        return getattr(self, f"{kind}_confidence")


# ==============================================================================
# SECTION 4: TRAJECTORY SETTINGS
# ==============================================================================

@dataclass
class TrajectoryConfig:
    """
    Per-joint trajectory history configuration.

    Attributes:
        selected_joints: COCO indices tracked (default: right wrist)
        max_points: FIFO cap per joint
        min_confidence: Keypoints must score above this to be recorded
        smooth: Resample trajectories with Catmull-Rom splines for display
        smoothing_segments: Interpolated points per original segment
    """
    selected_joints: Tuple[int, ...] = (10,)
    max_points: int = 300
    min_confidence: float = 0.3
    smooth: bool = True
    smoothing_segments: int = 8


# ==============================================================================
# SECTION 5: KINEMATICS SETTINGS
# ==============================================================================
# Speeds are measured in pixels per second, then converted to a physical unit.
#
# Calibration:
#   pixels_per_meter=None: derive from the athlete's height in the frame
#   pixels_per_meter=250:  fixed scene scale (e.g. measured court lines)
#
# unit_factor converts m/s to the display unit (3.6 -> km/h).
# ==============================================================================

@dataclass
class KinematicsConfig:
    """
    Velocity derivation configuration.

    Attributes:
        pixels_per_meter: Fixed scene scale (None = estimate from person height)
        person_height_m: Assumed athlete height for the estimate
        fallback_pixels_per_meter: Scale used when no estimate is possible
        unit_factor: Multiplier from m/s to the reported unit
        max_speed: Samples above this (reported unit) are treated as glitches
        max_gap_s: Larger time gaps break continuity instead of producing a speed
        history_length: Moving-average window for the reported current speed
        min_confidence: Gating threshold shared with the trajectory tracker
            (a keypoint must score above it)
        tracked_limbs: Limb name -> COCO keypoint index
        reset_epsilon_s: Seeks to a time at or below this reset the peak
        profile_cutoff_hz: Low-pass cutoff for offline speed profiles (None = raw)
    """
    pixels_per_meter: Optional[float] = None
    person_height_m: float = 1.75
    fallback_pixels_per_meter: float = 100.0
    unit_factor: float = 3.6
    max_speed: float = 200.0
    max_gap_s: float = 0.5
    history_length: int = 5
    min_confidence: float = 0.3
    tracked_limbs: Dict[str, int] = field(
        default_factory=lambda: {"left_wrist": 9, "right_wrist": 10}
    )
    reset_epsilon_s: float = 0.05
    profile_cutoff_hz: Optional[float] = 6.0


# ==============================================================================
# SECTION 6: TIMELINE SETTINGS
# ==============================================================================
# Swing markers are edited by dragging their start/end handles.
# A press that moves less than click_threshold_px is a click (seek to start).
# ==============================================================================

@dataclass
class TimelineConfig:
    """Event boundary editing configuration."""

    min_duration: float = 0.05
    click_threshold_px: float = 4.0
    track_width_px: float = 1000.0


# ==============================================================================
# SECTION 7: THUMBNAIL SETTINGS
# ==============================================================================

@dataclass
class ThumbnailConfig:
    """
    Scrub-preview sprite sheet configuration.

    Attributes:
        count: Number of thumbnails sampled across the video
        tile_width / tile_height: Size of each tile in the sprite
        columns: Tiles per sprite row
        metadata_timeout: Max seconds to wait for duration metadata
        seek_timeout: Max seconds to wait for a single seek to complete
        settle_delay: Pause after a seek so the decoded frame is ready
        jpeg_quality: Sprite encoding quality (0-100)
    """
    count: int = 100
    tile_width: int = 160
    tile_height: int = 90
    columns: int = 10
    metadata_timeout: float = 30.0
    seek_timeout: float = 5.0
    settle_delay: float = 0.02
    jpeg_quality: int = 70


# ==============================================================================
# MASTER CONFIGURATION CLASS
# ==============================================================================

@dataclass
class EngineConfig:
    """
    Master configuration class combining all settings.

    Usage:
        >>> config = EngineConfig()
        >>> config.timeline.min_duration
        0.05
    """

    frame_clock: FrameClockConfig = field(default_factory=FrameClockConfig)
    keypoints: KeypointConfig = field(default_factory=KeypointConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    trajectory: TrajectoryConfig = field(default_factory=TrajectoryConfig)
    kinematics: KinematicsConfig = field(default_factory=KinematicsConfig)
    timeline: TimelineConfig = field(default_factory=TimelineConfig)
    thumbnails: ThumbnailConfig = field(default_factory=ThumbnailConfig)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not 0 <= self.trajectory.min_confidence <= 1:
            raise ValueError("trajectory.min_confidence must be between 0 and 1")
        if not 0 <= self.kinematics.min_confidence <= 1:
            raise ValueError("kinematics.min_confidence must be between 0 and 1")
        if self.trajectory.max_points < 1:
            raise ValueError("trajectory.max_points must be at least 1")
        if self.timeline.min_duration <= 0:
            raise ValueError("timeline.min_duration must be positive")
        if self.thumbnails.count < 1 or self.thumbnails.columns < 1:
            raise ValueError("thumbnails.count and thumbnails.columns must be at least 1")
        if not 0 <= self.thumbnails.jpeg_quality <= 100:
            raise ValueError("thumbnails.jpeg_quality must be between 0 and 100")
        if self.frame_clock.default_fps not in self.frame_clock.canonical_rates:
            raise ValueError("frame_clock.default_fps must be a canonical rate")
        unknown = set(self.detection.enabled_kinds) - {"pose", "object", "projectile"}
        if unknown:
            raise ValueError(f"Unknown detection kinds: {sorted(unknown)}")
        for kind in ("pose", "object", "projectile"):
            if not 0 <= self.detection.min_confidence(kind) <= 1:
                raise ValueError(f"detection.{kind}_confidence must be between 0 and 1")
        if self.kinematics.profile_cutoff_hz is not None and self.kinematics.profile_cutoff_hz <= 0:
            raise ValueError("kinematics.profile_cutoff_hz must be positive")

    def print_summary(self) -> None:
        """Print a summary of current configuration."""
        print("\n" + "=" * 60)
        print("TIMELINE ENGINE CONFIGURATION SUMMARY")
        print("=" * 60)
        print(f"\n[Frame Clock]")
        print(f"  Default FPS: {self.frame_clock.default_fps}")
        print(f"  Samples: {self.frame_clock.sample_count}")
        print(f"\n[Detections]")
        print(f"  Enabled: {', '.join(self.detection.enabled_kinds)}")
        print(f"\n[Trajectories]")
        print(f"  Joints: {list(self.trajectory.selected_joints)}")
        print(f"  Max Points: {self.trajectory.max_points}")
        print(f"  Gate: {self.trajectory.min_confidence}")
        print(f"\n[Kinematics]")
        scale = self.kinematics.pixels_per_meter or "auto (person height)"
        print(f"  Scale: {scale}")
        print(f"  Limbs: {', '.join(self.kinematics.tracked_limbs)}")
        print(f"\n[Timeline]")
        print(f"  Min Duration: {self.timeline.min_duration}s")
        print(f"\n[Thumbnails]")
        print(f"  Count: {self.thumbnails.count} "
              f"({self.thumbnails.tile_width}x{self.thumbnails.tile_height})")
        print("=" * 60 + "\n")


# ==============================================================================
# PRESET FACTORIES
# ==============================================================================

def get_high_speed_config() -> EngineConfig:
    """Slow-motion capture (120 fps phones, high-speed cameras)."""
    config = EngineConfig()
    config.frame_clock.default_fps = 120
    config.trajectory.max_points = 600
    config.kinematics.max_gap_s = 0.25
    config.kinematics.history_length = 9
    return config


def get_preview_config() -> EngineConfig:
    """Lightweight scrub previews for long rally videos."""
    config = EngineConfig()
    config.thumbnails.count = 40
    config.thumbnails.tile_width = 128
    config.thumbnails.tile_height = 72
    config.thumbnails.columns = 8
    return config


def list_presets() -> List[str]:
    """Names accepted by the command line --preset flag."""
    return ["default", "high_speed", "preview"]


# ==============================================================================
# MODULE TEST
# ==============================================================================

if __name__ == "__main__":
    config = EngineConfig()
    config.print_summary()
