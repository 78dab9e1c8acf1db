from __future__ import annotations

import numpy as np
import pytest

from configs.config import DetectionConfig
from timeline_core.detections import (
    DetectionKind,
    DetectionMultiplexer,
    ObjectDetection,
    PoseDetection,
    ProjectileDetection,
)


def _pose(frame_idx: int, confidence: float = 0.9) -> PoseDetection:
    keypoints = np.tile([[100.0, 200.0]], (17, 1))
    return PoseDetection.single(frame_idx, keypoints, np.full(17, confidence))


def test_submit_keeps_only_latest_result() -> None:
    mux = DetectionMultiplexer()
    assert mux.submit(_pose(10))
    assert mux.submit(_pose(12))
    snapshot = mux.latest(DetectionKind.POSE)
    assert snapshot is not None
    assert snapshot.frame_idx == 12
    assert mux.latest_pose().frame_idx == 12


def test_redelivered_frame_does_not_double_count() -> None:
    mux = DetectionMultiplexer()
    assert mux.submit(_pose(100, 0.8))
    assert not mux.submit(_pose(100, 0.8))
    aggregate = mux.aggregates(DetectionKind.POSE)[0]
    assert aggregate.count == 1
    assert mux.average_confidence(DetectionKind.POSE, 0) == pytest.approx(0.8)


def test_running_confidence_average_per_identity() -> None:
    mux = DetectionMultiplexer(DetectionConfig(enabled_kinds=("object",)))
    mux.submit(ObjectDetection(1, None, [[0, 0, 10, 10], [5, 5, 20, 20]], [0.6, 0.9],
                               ["player", "racket"], track_ids=np.array([7, 8])))
    mux.submit(ObjectDetection(2, None, [[0, 0, 10, 10]], [0.8], ["player"],
                               track_ids=np.array([7])))
    assert mux.average_confidence(DetectionKind.OBJECT, 7) == pytest.approx(0.7)
    assert mux.average_confidence(DetectionKind.OBJECT, 8) == pytest.approx(0.9)
    assert mux.average_confidence(DetectionKind.OBJECT, 99) is None


def test_disabled_stream_is_torn_down_and_ignores_results() -> None:
    mux = DetectionMultiplexer()
    mux.submit(_pose(5))
    version = mux.version
    mux.set_enabled(DetectionKind.POSE, False)
    assert mux.latest(DetectionKind.POSE) is None
    assert mux.aggregates(DetectionKind.POSE) == {}
    assert mux.version > version
    assert not mux.submit(_pose(6))

    mux.set_enabled(DetectionKind.POSE, True)
    assert mux.submit(_pose(7))


def test_stream_error_degrades_to_no_overlay() -> None:
    mux = DetectionMultiplexer(DetectionConfig(enabled_kinds=("pose", "projectile")))
    mux.submit(ProjectileDetection(3, 0.1, (50.0, 60.0), 0.7))
    mux.report_error(DetectionKind.PROJECTILE, RuntimeError("model crashed"))
    assert mux.latest(DetectionKind.PROJECTILE) is None
    assert mux.error(DetectionKind.PROJECTILE) == "model crashed"

    mux.submit(ProjectileDetection(4, 0.13, (52.0, 61.0), 0.7))
    assert mux.error(DetectionKind.PROJECTILE) is None


def test_staleness_reports_lag_behind_display() -> None:
    mux = DetectionMultiplexer()
    assert mux.staleness(DetectionKind.POSE, 40) is None
    mux.submit(_pose(35))
    assert mux.staleness(DetectionKind.POSE, 40) == 5


def test_pose_arrays_must_agree_on_people() -> None:
    with pytest.raises(ValueError):
        PoseDetection(0, None, np.zeros((2, 17, 2)), np.zeros((1, 17)), np.zeros((2, 4)), np.zeros(2))


def test_primary_person_is_most_confident() -> None:
    keypoints = np.stack([np.zeros((17, 2)), np.ones((17, 2))])
    pose = PoseDetection(0, None, keypoints, np.full((2, 17), 0.5),
                         [[0, 0, 1, 1], [0, 0, 2, 2]], [0.3, 0.9])
    primary_keypoints, _ = pose.get_primary_person()
    assert primary_keypoints[0, 0] == 1.0
    assert list(pose.primary_box()) == [0, 0, 2, 2]


def test_pose_dict_export_is_readable_back() -> None:
    pose = _pose(42)
    restored = PoseDetection.from_dict(pose.to_dict())
    assert restored.frame_idx == 42
    np.testing.assert_allclose(restored.keypoints, pose.keypoints)


def test_late_redelivery_is_dropped() -> None:
    mux = DetectionMultiplexer()
    assert mux.submit(_pose(100, 0.9))
    assert mux.submit(_pose(101, 0.5))
    assert not mux.submit(_pose(100, 0.9))

    aggregate = mux.aggregates(DetectionKind.POSE)[0]
    assert aggregate.count == 2
    assert aggregate.mean == pytest.approx(0.7)
    assert mux.latest(DetectionKind.POSE).frame_idx == 101


def test_rewind_accepts_earlier_frames_after_seek() -> None:
    mux = DetectionMultiplexer()
    mux.submit(_pose(200))
    mux.rewind()
    assert mux.submit(_pose(40))
    assert mux.latest(DetectionKind.POSE).frame_idx == 40
    assert mux.aggregates(DetectionKind.POSE)[0].count == 2


def test_low_confidence_results_do_not_feed_the_average() -> None:
    mux = DetectionMultiplexer(DetectionConfig(enabled_kinds=("object", "projectile")))
    mux.submit(ObjectDetection(1, None, [[0, 0, 10, 10], [5, 5, 20, 20]], [0.4, 0.9],
                               ["player", "racket"], track_ids=np.array([7, 8])))
    assert mux.average_confidence(DetectionKind.OBJECT, 7) is None
    assert mux.average_confidence(DetectionKind.OBJECT, 8) == pytest.approx(0.9)
    assert mux.latest(DetectionKind.OBJECT).frame_idx == 1

    mux.submit(ProjectileDetection(1, None, (10.0, 10.0), 0.5))
    assert mux.average_confidence(DetectionKind.PROJECTILE, "projectile") is None
    mux.submit(ProjectileDetection(2, None, (12.0, 11.0), 0.8))
    assert mux.average_confidence(DetectionKind.PROJECTILE, "projectile") == pytest.approx(0.8)
