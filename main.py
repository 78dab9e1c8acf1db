"""
================================================================================
MOTION TIMELINE ENGINE - MAIN RUNNER
================================================================================
Command line entry point for offline use of the timeline engine.

Usage:
    # Build scrub-preview thumbnails (sprite.jpg + thumbnails.vtt)
    python main.py --video path/to/rally.mp4 --output-dir ./output

    # Replay recorded pose detections and report trajectories / speeds
    python main.py --detections rally_keypoints.json

    # Print effective swing boundaries
    python main.py --events swings.json --fps 60

    # Fewer, smaller thumbnails
    python main.py --preset preview --video rally.mp4
================================================================================
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

# ==============================================================================
# Add project root to path
# ==============================================================================
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from configs.config import (
    EngineConfig,
    get_high_speed_config,
    get_preview_config,
    list_presets,
)
from timeline_core.detections import PoseDetection
from timeline_core.errors import ThumbnailGenerationError
from timeline_core.media import OpenCVFrameSource, ResourceRegistry
from timeline_core.pipeline import MotionTimelineEngine
from timeline_core.thumbnails import ThumbnailSpriteGenerator, build_vtt
from timeline_core.timeline import TimelineEvent, TimelineEventModel


# ==============================================================================
# THUMBNAILS
# ==============================================================================

async def generate_thumbnails(video_path: Path, config: EngineConfig, output_dir: Path) -> dict:
    """Generate a sprite sheet and write it next to a file-based VTT."""
    registry = ResourceRegistry()
    generator = ThumbnailSpriteGenerator(config.thumbnails, registry=registry)
    source = OpenCVFrameSource(video_path)
    try:
        metadata = await source.wait_metadata()
        print(metadata)
        cache = await generator.generate(source)

        output_dir.mkdir(parents=True, exist_ok=True)
        sprite_path = output_dir / "sprite.jpg"
        vtt_path = output_dir / "thumbnails.vtt"
        sprite_path.write_bytes(registry.get(cache.sprite_handle).data)
        vtt_path.write_text(build_vtt(cache.entries, sprite_path.name))
        return {
            "sprite": str(sprite_path),
            "vtt": str(vtt_path),
            "count": len(cache.entries),
        }
    finally:
        generator.release()
        source.close()


# ==============================================================================
# DETECTION REPLAY
# ==============================================================================

def load_detections(path: Path) -> tuple:
    """Read a keypoint export: {"fps": .., "frames": [..]} or a bare list."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, list):
        return None, [PoseDetection.from_dict(d) for d in data]
    return data.get("fps"), [PoseDetection.from_dict(d) for d in data["frames"]]


def replay_detections(path: Path, config: EngineConfig, joints: Optional[List[str]] = None) -> dict:
    fps, results = load_detections(path)
    engine = MotionTimelineEngine(config)
    if fps:
        engine.frame_clock.fps = engine.frame_clock.snap_fps(fps)
    if joints:
        engine.select_joints(joints)

    new_frames = engine.replay_detections(results)
    state = engine.overlay_state()

    # Whole-trajectory speeds, low-pass filtered, as a cross-check on the live peaks
    scale = engine.kinematics.pixels_per_meter(engine.detections.latest_pose())
    profile_peaks = {}
    for joint, points in engine.trajectories.snapshot().items():
        speeds = engine.kinematics.profile(points, engine.frame_clock.fps, scale)
        profile_peaks[joint] = float(speeds.max()) if len(speeds) else 0.0

    return {
        "frames": len(results),
        "new_frames": new_frames,
        "fps": engine.frame_clock.fps,
        "trajectory_lengths": engine.trajectories.lengths(),
        "velocities": state["velocities"],
        "profile_peaks": profile_peaks,
    }


# ==============================================================================
# EVENTS
# ==============================================================================

def load_events(path: Path, fps: float) -> List[TimelineEvent]:
    with open(path) as f:
        data = json.load(f)
    records = data["events"] if isinstance(data, dict) else data
    return [TimelineEvent.from_dict(record, fps) for record in records]


# ==============================================================================
# COMMAND LINE INTERFACE
# ==============================================================================

def parse_args():
    parser = argparse.ArgumentParser(
        description="Motion / Event Timeline Engine",
    )

    parser.add_argument("--video", "-v", type=str, help="Video to build thumbnails for")
    parser.add_argument("--thumbnails", "-n", type=int, help="Number of thumbnails")
    parser.add_argument("--detections", "-d", type=str, help="Pose detections JSON to replay")
    parser.add_argument("--joints", type=str, help="Comma-separated COCO joint indices or names")
    parser.add_argument("--events", "-e", type=str, help="Timeline events JSON")
    parser.add_argument("--fps", type=float, default=30.0, help="Frame rate for --events")
    parser.add_argument("--output-dir", "-o", type=str, default="output", help="Output directory")
    parser.add_argument(
        "--preset", "-p",
        choices=list_presets(),
        default="default",
        help="Configuration preset"
    )
    parser.add_argument("--verbose", action="store_true", help="Verbose output")

    return parser.parse_args()


def get_config_for_preset(preset: str) -> EngineConfig:
    presets = {
        "default": EngineConfig,
        "high_speed": get_high_speed_config,
        "preview": get_preview_config,
    }
    return presets[preset]()


def main():
    args = parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    print("\n" + "=" * 60)
    print("MOTION TIMELINE ENGINE")
    print("=" * 60)

    config = get_config_for_preset(args.preset)
    if args.thumbnails:
        config.thumbnails.count = args.thumbnails
        config.__post_init__()

    if args.verbose:
        config.print_summary()

    if not (args.video or args.detections or args.events):
        print("Nothing to do: pass --video, --detections or --events")
        return 1

    if args.video:
        print("\n[Thumbnails] Generating sprite sheet...")
        start_time = time.time()
        try:
            result = asyncio.run(generate_thumbnails(Path(args.video), config, Path(args.output_dir)))
        except (FileNotFoundError, ThumbnailGenerationError, ValueError) as e:
            print(f"  ✗ {e}")
            return 1
        print(f"  ✓ {result['count']} thumbnails in {time.time() - start_time:.1f}s")
        print(f"  ✓ Saved: {result['sprite']}")
        print(f"  ✓ Saved: {result['vtt']}")

    if args.detections:
        print("\n[Detections] Replaying pose results...")
        joints = args.joints.split(",") if args.joints else None
        result = replay_detections(Path(args.detections), config, joints)
        print(f"  Frames: {result['frames']} ({result['new_frames']} distinct) @ {result['fps']} FPS")
        for joint, length in result["trajectory_lengths"].items():
            name = config.keypoints.keypoint_names[joint]
            peak = result["profile_peaks"].get(joint, 0.0)
            print(f"  Joint {joint} ({name}): {length} trajectory points, filtered peak {peak:.1f} km/h")
        for limb, velocity in result["velocities"].items():
            print(f"  {limb}: current {velocity['current']:.1f}, peak {velocity['peak']:.1f} km/h")

    if args.events:
        print("\n[Events] Effective boundaries...")
        model = TimelineEventModel(load_events(Path(args.events), args.fps), config.timeline)
        model.frame_clock.fps = model.frame_clock.snap_fps(args.fps)
        for event_id, bounds in model.effective_map().items():
            event = model.get_event(event_id)
            print(f"  {event_id} [{event.kind.value}] {event.label}: "
                  f"{bounds.start_time:.3f}s - {bounds.end_time:.3f}s "
                  f"(frames {bounds.start_frame}-{bounds.end_frame})")

    print("\n✓ Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
