from __future__ import annotations

import numpy as np
import pytest

from configs.config import KinematicsConfig
from timeline_core.detections import PoseDetection
from timeline_core.kinematics import KinematicsEngine, butterworth_filter, speed_profile


def _engine(**overrides) -> KinematicsEngine:
    params = {"pixels_per_meter": 100.0, "history_length": 1}
    params.update(overrides)
    return KinematicsEngine(KinematicsConfig(**params))


def test_speed_is_converted_to_km_per_hour() -> None:
    engine = _engine()
    engine.update("right_wrist", 100.0, 200.0, time=0.0, frame=0, confidence=0.9)
    sample = engine.update("right_wrist", 110.0, 200.0, time=1 / 30, frame=1, confidence=0.9)
    # 10 px / 100 px/m over 1/30 s = 3 m/s = 10.8 km/h
    assert sample.current == pytest.approx(10.8)
    assert sample.peak == pytest.approx(10.8)


def test_duplicate_samples_are_skipped() -> None:
    engine = _engine()
    engine.update("right_wrist", 0.0, 0.0, 0.0, 0, 0.9)
    engine.update("right_wrist", 10.0, 0.0, 1 / 30, 1, 0.9)
    before = engine.sample("right_wrist")

    engine.update("right_wrist", 50.0, 0.0, 1 / 30, 1, 0.9)
    engine.update("right_wrist", 50.0, 0.0, 1 / 30, 2, 0.9)
    assert engine.sample("right_wrist") == before


def test_low_confidence_does_not_update_velocity() -> None:
    engine = _engine()
    engine.update("left_wrist", 0.0, 0.0, 0.0, 0, 0.9)
    engine.update("left_wrist", 500.0, 0.0, 1 / 30, 1, 0.1)
    sample = engine.update("left_wrist", 10.0, 0.0, 2 / 30, 2, 0.9)
    assert sample.current == pytest.approx(5.4)


def test_peak_is_monotonic_until_reset() -> None:
    engine = _engine(history_length=3)
    positions = [2.0 * i * i for i in range(20)]
    positions += [positions[-1] + 20.0 * (1 - k / 20) * k for k in range(1, 20)]

    peaks = []
    for frame, x in enumerate(positions):
        sample = engine.update("right_wrist", x, 0.0, frame / 30, frame, 0.9)
        peaks.append(sample.peak)

    assert all(b >= a for a, b in zip(peaks, peaks[1:]))
    assert engine.sample("right_wrist").current < peaks[-1]

    engine.on_seek(0.0)
    assert engine.sample("right_wrist").peak == 0.0


def test_seek_away_from_start_breaks_continuity_but_keeps_peak() -> None:
    engine = _engine()
    engine.update("right_wrist", 0.0, 0.0, 1.0, 30, 0.9)
    engine.update("right_wrist", 20.0, 0.0, 1 + 1 / 30, 31, 0.9)
    peak = engine.sample("right_wrist").peak

    engine.on_seek(5.0)
    sample = engine.update("right_wrist", 400.0, 0.0, 5.0, 150, 0.9)
    assert sample.current == 0.0
    assert sample.peak == pytest.approx(peak)


def test_time_gap_and_spikes_do_not_produce_speed() -> None:
    engine = _engine()
    engine.update("right_wrist", 0.0, 0.0, 0.0, 0, 0.9)
    assert engine.update("right_wrist", 30.0, 0.0, 1.0, 30, 0.9).peak == 0.0
    assert engine.update("right_wrist", 2000.0, 0.0, 1 + 1 / 30, 31, 0.9).peak == 0.0
    assert engine.update("right_wrist", 2010.0, 0.0, 1 + 2 / 30, 32, 0.9).peak == pytest.approx(10.8)


def test_scale_from_person_height() -> None:
    engine = KinematicsEngine(KinematicsConfig(history_length=1))
    keypoints = np.zeros((17, 2))
    pose = PoseDetection.single(0, keypoints, np.full(17, 0.9), bbox=(0, 0, 80, 175))
    assert engine.pixels_per_meter(pose) == pytest.approx(100.0)
    assert engine.pixels_per_meter() == 100.0

    engine.update_from_pose(pose, 0.0, 0)
    keypoints = keypoints.copy()
    keypoints[10] = (10.0, 0.0)
    moved = PoseDetection.single(1, keypoints, np.full(17, 0.9), bbox=(0, 0, 80, 175))
    samples = engine.update_from_pose(moved, 1 / 30, 1)

    assert samples["right_wrist"].current == pytest.approx(10.8)
    assert samples["left_wrist"].current == 0.0


def test_speed_profile_for_constant_velocity() -> None:
    frames = np.arange(60)
    points = np.column_stack([frames * 10.0, np.full(60, 50.0), frames])
    speeds = speed_profile(points, fps=30, pixels_per_meter=100.0)
    np.testing.assert_allclose(speeds, 10.8)

    filtered = speed_profile(points, fps=30, pixels_per_meter=100.0, cutoff_hz=6.0)
    np.testing.assert_allclose(filtered[10:-10], 10.8, rtol=1e-2)


def test_butterworth_filter_skips_short_series() -> None:
    data = np.array([1.0, 5.0, 2.0])
    np.testing.assert_array_equal(butterworth_filter(data, 6.0, 30.0), data)
    assert len(speed_profile(np.zeros((1, 3)), 30, 100.0)) == 1


def test_engine_profile_applies_configured_cutoff() -> None:
    frames = np.arange(60)
    x = frames * 10.0
    x[30] += 40.0
    points = np.column_stack([x, np.full(60, 50.0), frames])

    raw = _engine(profile_cutoff_hz=None).profile(points, fps=30)
    smoothed = _engine().profile(points, fps=30)
    assert raw.max() == pytest.approx(32.4)
    assert smoothed.max() < raw.max()

    steady = np.column_stack([frames * 10.0, np.full(60, 50.0), frames])
    metres_per_second = _engine(unit_factor=1.0, profile_cutoff_hz=None).profile(steady, fps=30)
    np.testing.assert_allclose(metres_per_second, 3.0)


def test_keypoint_exactly_at_gate_is_ignored() -> None:
    engine = _engine(min_confidence=0.3)
    engine.update("right_wrist", 0.0, 0.0, 0.0, 0, 0.3)
    engine.update("right_wrist", 10.0, 0.0, 1 / 30, 1, 0.3)
    assert engine.sample("right_wrist").peak == 0.0
