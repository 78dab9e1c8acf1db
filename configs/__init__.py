"""Configuration package for the motion timeline engine."""
from configs.config import (
    EngineConfig,
    FrameClockConfig,
    KeypointConfig,
    DetectionConfig,
    TrajectoryConfig,
    KinematicsConfig,
    TimelineConfig,
    ThumbnailConfig,
    get_high_speed_config,
    get_preview_config,
    list_presets,
)
