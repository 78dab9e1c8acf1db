from __future__ import annotations

import asyncio
import json
from pathlib import Path

import numpy as np
import pytest

from configs.config import EngineConfig, ThumbnailConfig, TrajectoryConfig
from timeline_core.detections import DetectionKind, PoseDetection
from timeline_core.media import SyntheticFrameSource
from timeline_core.pipeline import MotionTimelineEngine
from timeline_core.thumbnails import SpriteStatus
from timeline_core.timeline import Edge, GestureOutcome, TimelineEvent

import main


def _pose(frame_idx: int, wrist_x: float) -> PoseDetection:
    keypoints = np.tile([[200.0, 300.0]], (17, 1))
    keypoints[10] = (wrist_x, 250.0)
    return PoseDetection.single(frame_idx, keypoints, np.full(17, 0.9),
                                timestamp=frame_idx / 30, bbox=(100, 100, 300, 275))


def _config() -> EngineConfig:
    return EngineConfig(
        trajectory=TrajectoryConfig(selected_joints=(9, 10)),
        thumbnails=ThumbnailConfig(count=8, tile_width=16, tile_height=9, columns=4,
                                   settle_delay=0.0, seek_timeout=1.0),
    )


def test_detections_flow_into_trajectories_and_velocity() -> None:
    engine = MotionTimelineEngine(_config())
    for frame in range(10):
        assert engine.on_detection(_pose(frame, 100.0 + 10.0 * frame))
    assert not engine.on_detection(_pose(9, 500.0))

    assert engine.trajectories.lengths() == {9: 10, 10: 10}
    state = engine.overlay_state()
    # 10 px per frame at 30 fps, 175 px box -> 100 px/m
    assert state["velocities"]["right_wrist"]["peak"] == pytest.approx(10.8)
    assert state["velocities"]["left_wrist"]["peak"] == 0.0
    assert state["detections"]["pose"]["frame"] == 9
    assert len(state["trajectories"][10]) > 10


def test_duplicate_frame_100_yields_single_sample() -> None:
    engine = MotionTimelineEngine(_config())
    pose = _pose(100, 120.0)
    assert engine.replay_detections([pose, pose]) == 1
    assert engine.trajectories.length(10) == 1


def test_disabling_trajectories_clears_state() -> None:
    engine = MotionTimelineEngine(_config())
    engine.replay_detections(_pose(f, 10.0 * f) for f in range(5))
    engine.set_trajectories_enabled(False)
    assert engine.trajectories.lengths() == {9: 0, 10: 0}
    assert engine.kinematics.samples() == {}

    engine.on_detection(_pose(6, 80.0))
    assert engine.trajectories.length(10) == 0
    assert engine.overlay_state()["trajectories"] == {}


def test_detection_error_hides_overlay() -> None:
    engine = MotionTimelineEngine(_config())
    engine.on_detection(_pose(1, 10.0))
    engine.on_detection_error(DetectionKind.POSE, RuntimeError("worker died"))
    pose_state = engine.overlay_state()["detections"]["pose"]
    assert pose_state["frame"] is None
    assert pose_state["error"] == "worker died"


def test_seek_to_start_resets_session() -> None:
    engine = MotionTimelineEngine(_config())
    engine.replay_detections(_pose(f, 10.0 * f) for f in range(5))
    engine.on_seek(2.0)
    assert engine.current_frame == 60
    assert engine.kinematics.sample("right_wrist").peak > 0

    engine.on_seek(0.0)
    assert engine.kinematics.sample("right_wrist").peak == 0.0
    assert engine.trajectories.length(10) == 0


def test_timeline_click_and_scrub_share_the_source() -> None:
    async def run() -> None:
        engine = MotionTimelineEngine(_config())
        source = SyntheticFrameSource(duration=4.0, fps=30, width=32, height=18, seek_delay=0.002)
        engine.attach_source(source, detect_fps=False)
        engine.load_events([TimelineEvent("e1", "serve", 30, 60, 1.0, 2.0)])

        assert await engine.scrub_to(3.0) == 90
        engine.timeline.press_body("e1")
        engine.timeline.release()
        await asyncio.sleep(0.05)
        assert engine.current_time == 1.0
        assert 1.0 in source.seek_history

        cache = await engine.thumbnails.ensure(source).wait()
        assert cache.status == SpriteStatus.READY
        assert source.seek_count == 8 + 2
        assert source.listener_count("seeked") == 0

        engine.detach_source()
        assert engine.registry.live_count == 0
        assert engine.source is None

    asyncio.run(run())


def test_late_pose_does_not_rewind_overlay_or_average() -> None:
    engine = MotionTimelineEngine(_config())
    assert engine.on_detection(_pose(100, 120.0))
    assert engine.on_detection(_pose(101, 130.0))
    assert not engine.on_detection(_pose(100, 120.0))

    assert engine.detections.aggregates(DetectionKind.POSE)[0].count == 2
    assert list(engine.trajectories.points(10)[:, 2]) == [100, 101]
    assert engine.overlay_state()["detections"]["pose"]["frame"] == 101

    engine.on_seek(1.0)
    assert engine.trajectories.length(10) == 0
    assert engine.on_detection(_pose(30, 50.0))
    assert engine.trajectories.length(10) == 1


def test_timeline_geometry_arrives_with_metadata() -> None:
    async def run() -> None:
        engine = MotionTimelineEngine(_config())
        source = SyntheticFrameSource(duration=4.0, fps=30, width=32, height=18, metadata_delay=0.02)
        engine.attach_source(source, detect_fps=False, generate_thumbnails=False)
        engine.load_events([TimelineEvent("e1", "serve", 30, 60, 1.0, 2.0)])
        timeline = engine.timeline

        assert not timeline.has_geometry
        assert timeline.press_handle("e1", Edge.END, x=500.0)
        timeline.move(750.0)
        assert timeline.session.preview_time == 2.0

        await asyncio.sleep(0.1)
        assert timeline.duration == 4.0
        timeline.move(750.0)
        result = timeline.release()
        assert result.outcome == GestureOutcome.COMMITTED
        assert result.time == pytest.approx(3.0)
        engine.detach_source()

    asyncio.run(run())


def test_edge_drag_seeks_to_the_previewed_frame() -> None:
    async def run() -> None:
        engine = MotionTimelineEngine(_config())
        source = SyntheticFrameSource(duration=4.0, fps=30, width=32, height=18)
        engine.attach_source(source, detect_fps=False, generate_thumbnails=False)
        engine.load_events([TimelineEvent("e1", "serve", 30, 60, 1.0, 2.0)])
        timeline = engine.timeline

        assert timeline.press_handle("e1", Edge.END, x=500.0)
        timeline.move(625.0)
        await asyncio.sleep(0.02)
        assert source.seek_history == [2.5]
        assert engine.current_frame == 75

        # A newer preview supersedes one that has not started yet
        timeline.move(700.0)
        timeline.move(750.0)
        await asyncio.sleep(0.02)
        assert source.seek_history == [2.5, 3.0]
        assert engine.current_time == 3.0

        assert timeline.release().outcome == GestureOutcome.COMMITTED
        assert source.listener_count() == 0

    asyncio.run(run())


def test_cli_replays_detection_export(tmp_path: Path) -> None:
    path = tmp_path / "keypoints.json"
    frames = [_pose(f, 100.0 + 5.0 * f).to_dict() for f in range(12)]
    path.write_text(json.dumps({"fps": 29.97, "frames": frames}))

    result = main.replay_detections(path, EngineConfig(), joints=["right_wrist"])
    assert result["fps"] == 30
    assert result["new_frames"] == 12
    assert result["trajectory_lengths"] == {10: 12}
    # 5 px per frame at 30 fps, 100 px/m; too short to low-pass
    assert result["profile_peaks"][10] == pytest.approx(5.4)


def test_cli_loads_events(tmp_path: Path) -> None:
    path = tmp_path / "events.json"
    path.write_text(json.dumps({"events": [{"id": "a", "label": "smash", "start": 1.0, "end": 1.4}]}))
    events = main.load_events(path, fps=60)
    assert events[0].start_frame == 60
    assert events[0].end_frame == 84
