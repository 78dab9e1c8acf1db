from __future__ import annotations

import pytest

from configs.config import (
    DetectionConfig,
    EngineConfig,
    FrameClockConfig,
    KeypointConfig,
    KinematicsConfig,
    ThumbnailConfig,
    TrajectoryConfig,
    get_high_speed_config,
    get_preview_config,
    list_presets,
)


def test_defaults_are_valid() -> None:
    config = EngineConfig()
    assert config.frame_clock.default_fps == 30
    assert config.trajectory.max_points == 300
    assert config.timeline.min_duration == 0.05
    assert config.thumbnails.count == 100


@pytest.mark.parametrize(
    "overrides",
    [
        {"trajectory": TrajectoryConfig(min_confidence=1.5)},
        {"trajectory": TrajectoryConfig(max_points=0)},
        {"thumbnails": ThumbnailConfig(columns=0)},
        {"thumbnails": ThumbnailConfig(jpeg_quality=120)},
        {"frame_clock": FrameClockConfig(default_fps=29)},
        {"detection": DetectionConfig(enabled_kinds=("pose", "audio"))},
        {"detection": DetectionConfig(object_confidence=1.2)},
        {"kinematics": KinematicsConfig(profile_cutoff_hz=0.0)},
    ],
)
def test_invalid_values_raise(overrides: dict) -> None:
    with pytest.raises(ValueError):
        EngineConfig(**overrides)


def test_presets() -> None:
    assert list_presets() == ["default", "high_speed", "preview"]
    assert get_high_speed_config().frame_clock.default_fps == 120
    preview = get_preview_config().thumbnails
    assert (preview.count, preview.tile_width, preview.tile_height) == (40, 128, 72)


def test_keypoint_lookup() -> None:
    keypoints = KeypointConfig()
    assert keypoints.get_keypoint_index("right_wrist") == 10
    assert keypoints.get_keypoint_index("left_knee") == 13
    assert len(keypoints.keypoint_names) == keypoints.num_keypoints


def test_resolve_joint_accepts_names_and_indices() -> None:
    keypoints = KeypointConfig()
    assert keypoints.resolve_joint("left_wrist") == 9
    assert keypoints.resolve_joint(" 10") == 10
    assert keypoints.resolve_joint(13) == 13
    with pytest.raises(ValueError):
        keypoints.resolve_joint(17)
    with pytest.raises(ValueError):
        keypoints.resolve_joint("elbow")


def test_detection_gate_per_stream() -> None:
    detection = DetectionConfig(projectile_confidence=0.65)
    assert detection.min_confidence("pose") == 0.3
    assert detection.min_confidence("object") == 0.5
    assert detection.min_confidence("projectile") == 0.65
