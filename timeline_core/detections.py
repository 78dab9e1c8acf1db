"""
================================================================================
DETECTION MULTIPLEXER MODULE
================================================================================
Unifies the pose / object / projectile inference streams.

Inference runs out of band with display refresh: results arrive late, in
bursts, or not at all for some frames. The multiplexer keeps only the latest
result per stream (latest wins, no queue, no backpressure) together with a
running confidence average per tracked identity.
================================================================================
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple, Union

import numpy as np

from configs.config import DetectionConfig

logger = logging.getLogger(__name__)


class DetectionKind(str, Enum):
    POSE = "pose"
    OBJECT = "object"
    PROJECTILE = "projectile"


# ==============================================================================
# RESULT VARIANTS
# ==============================================================================

@dataclass
class PoseDetection:
    """Container for keypoint results from a single frame."""
    frame_idx: int
    timestamp: Optional[float]
    keypoints: np.ndarray       # (N, 17, 2)
    scores: np.ndarray          # (N, 17)
    bboxes: np.ndarray          # (N, 4) xyxy
    bbox_scores: np.ndarray     # (N,)
    track_ids: Optional[np.ndarray] = None
    kind: DetectionKind = field(default=DetectionKind.POSE, init=False)

    def __post_init__(self):
        self.keypoints = np.asarray(self.keypoints, dtype=float).reshape(-1, 17, 2)
        self.scores = np.asarray(self.scores, dtype=float).reshape(-1, 17)
        self.bboxes = np.asarray(self.bboxes, dtype=float).reshape(-1, 4)
        self.bbox_scores = np.asarray(self.bbox_scores, dtype=float).reshape(-1)
        if not (len(self.keypoints) == len(self.scores) == len(self.bboxes) == len(self.bbox_scores)):
            raise ValueError("Pose arrays disagree on the number of people")

    @property
    def num_people(self) -> int:
        return len(self.keypoints)

    @classmethod
    def single(
        cls,
        frame_idx: int,
        keypoints: np.ndarray,
        scores: np.ndarray,
        timestamp: Optional[float] = None,
        bbox: Optional[Iterable[float]] = None,
    ) -> "PoseDetection":
        """Build a one-person result; the box defaults to the keypoint extent."""
        keypoints = np.asarray(keypoints, dtype=float).reshape(17, 2)
        scores = np.asarray(scores, dtype=float).reshape(17)
        if bbox is None:
            bbox = (*keypoints.min(axis=0), *keypoints.max(axis=0))
        return cls(
            frame_idx=frame_idx,
            timestamp=timestamp,
            keypoints=keypoints[None],
            scores=scores[None],
            bboxes=np.asarray(bbox, dtype=float)[None],
            bbox_scores=np.array([float(scores.mean())]),
        )

    def get_primary_person(self, by: str = "confidence") -> Optional[Tuple[np.ndarray, np.ndarray]]:
        if self.num_people == 0:
            return None

        if by == "confidence":
            primary_idx = np.argmax(self.bbox_scores)
        elif by == "area":
            areas = (self.bboxes[:, 2] - self.bboxes[:, 0]) * \
                    (self.bboxes[:, 3] - self.bboxes[:, 1])
            primary_idx = np.argmax(areas)
        else:
            primary_idx = 0

        return self.keypoints[primary_idx], self.scores[primary_idx]

    def primary_box(self) -> Optional[np.ndarray]:
        if self.num_people == 0:
            return None
        return self.bboxes[int(np.argmax(self.bbox_scores))]

    def identities(self) -> List[Hashable]:
        if self.track_ids is not None:
            return [int(t) for t in self.track_ids]
        return list(range(self.num_people))

    def confidences(self) -> List[float]:
        return [float(s.mean()) for s in self.scores]

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "kind": self.kind.value,
            "frame_idx": self.frame_idx,
            "timestamp": self.timestamp,
            "num_people": self.num_people,
            "keypoints": self.keypoints.tolist(),
            "scores": self.scores.tolist(),
            "bboxes": self.bboxes.tolist(),
            "bbox_scores": self.bbox_scores.tolist(),
        }
        if self.track_ids is not None:
            result["track_ids"] = self.track_ids.tolist()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoseDetection":
        return cls(
            frame_idx=data["frame_idx"],
            timestamp=data.get("timestamp"),
            keypoints=np.array(data["keypoints"]),
            scores=np.array(data["scores"]),
            bboxes=np.array(data["bboxes"]),
            bbox_scores=np.array(data["bbox_scores"]),
            track_ids=np.array(data["track_ids"]) if "track_ids" in data else None,
        )


@dataclass
class ObjectDetection:
    """Object boxes (players, rackets, balls) for a single frame."""
    frame_idx: int
    timestamp: Optional[float]
    boxes: np.ndarray           # (N, 4) xyxy
    scores: np.ndarray          # (N,)
    labels: List[str]
    track_ids: Optional[np.ndarray] = None
    kind: DetectionKind = field(default=DetectionKind.OBJECT, init=False)

    def __post_init__(self):
        self.boxes = np.asarray(self.boxes, dtype=float).reshape(-1, 4)
        self.scores = np.asarray(self.scores, dtype=float).reshape(-1)
        self.labels = list(self.labels)
        if not (len(self.boxes) == len(self.scores) == len(self.labels)):
            raise ValueError("Object arrays disagree on the number of boxes")

    def identities(self) -> List[Hashable]:
        if self.track_ids is not None:
            return [int(t) for t in self.track_ids]
        return [f"{label}:{i}" for i, label in enumerate(self.labels)]

    def confidences(self) -> List[float]:
        return [float(s) for s in self.scores]


@dataclass
class ProjectileDetection:
    """Ball / shuttle position for a single frame (None when not found)."""
    frame_idx: int
    timestamp: Optional[float]
    position: Optional[Tuple[float, float]]
    confidence: float
    velocity: Optional[Tuple[float, float]] = None
    trajectory: List[Tuple[float, float, int]] = field(default_factory=list)
    kind: DetectionKind = field(default=DetectionKind.PROJECTILE, init=False)

    def identities(self) -> List[Hashable]:
        return ["projectile"] if self.position is not None else []

    def confidences(self) -> List[float]:
        return [float(self.confidence)] if self.position is not None else []


DetectionResult = Union[PoseDetection, ObjectDetection, ProjectileDetection]


# ==============================================================================
# SNAPSHOTS AND AGGREGATES
# ==============================================================================

@dataclass
class DetectionSnapshot:
    """Latest result of one stream and the frame it arrived for."""
    kind: DetectionKind
    frame_idx: int
    result: DetectionResult


@dataclass
class ConfidenceAggregate:
    total: float = 0.0
    count: int = 0

    def add(self, value: float) -> None:
        self.total += value
        self.count += 1

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0


class DetectionMultiplexer:
    """
    Latest-wins snapshot per detection stream.

    Producers call ``submit`` whenever a result is ready; it never blocks
    and never raises. Consumers read ``latest(kind)`` at their own cadence
    and must tolerate a frame index older than the one on screen.

    Example:
        >>> mux = DetectionMultiplexer()
        >>> mux.submit(pose_result)
        True
        >>> mux.latest(DetectionKind.POSE).frame_idx
        100
    """

    def __init__(self, config: Optional[DetectionConfig] = None):
        self.config = config or DetectionConfig()
        self._enabled = {DetectionKind(kind) for kind in self.config.enabled_kinds}
        self._snapshots: Dict[DetectionKind, DetectionSnapshot] = {}
        self._aggregates: Dict[DetectionKind, Dict[Hashable, ConfidenceAggregate]] = {}
        self._errors: Dict[DetectionKind, str] = {}
        self._high_water: Dict[DetectionKind, int] = {}
        self.version = 0

    # ------------------------------------------------------------------
    # Stream control
    # ------------------------------------------------------------------

    def is_enabled(self, kind: DetectionKind) -> bool:
        return DetectionKind(kind) in self._enabled

    def set_enabled(self, kind: DetectionKind, enabled: bool) -> None:
        """Enable a stream, or disable it and release its state."""
        kind = DetectionKind(kind)
        if enabled:
            self._enabled.add(kind)
            return
        self._enabled.discard(kind)
        self._snapshots.pop(kind, None)
        self._aggregates.pop(kind, None)
        self._high_water.pop(kind, None)
        self._errors.pop(kind, None)
        self.version += 1

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def submit(self, result: DetectionResult) -> bool:
        """
        Record a result as the latest for its stream.

        Returns:
            True if the result was for a new frame, False if it was dropped
            (stream disabled) or was not newer than the last accepted frame.
        """
        kind = result.kind
        if kind not in self._enabled:
            return False

        # Frames at or behind the newest one accepted are late re-deliveries
        high_water = self._high_water.get(kind)
        if high_water is not None and result.frame_idx <= high_water:
            return False
        self._high_water[kind] = result.frame_idx

        self._snapshots[kind] = DetectionSnapshot(kind=kind, frame_idx=result.frame_idx, result=result)
        self._errors.pop(kind, None)
        self.version += 1

        gate = self.config.min_confidence(kind.value)
        aggregates = self._aggregates.setdefault(kind, {})
        for identity, confidence in zip(result.identities(), result.confidences()):
            if confidence > gate:
                aggregates.setdefault(identity, ConfidenceAggregate()).add(confidence)
        return True

    def rewind(self) -> None:
        """
        Accept frames older than those already seen (after a seek).
        Snapshots and aggregates are kept.
        """
        self._high_water.clear()

    def report_error(self, kind: DetectionKind, error: BaseException) -> None:
        """A stream failed: drop its overlay until it recovers."""
        kind = DetectionKind(kind)
        logger.warning("%s detection unavailable: %s", kind.value, error)
        self._errors[kind] = str(error)
        if self._snapshots.pop(kind, None) is not None:
            self.version += 1

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def latest(self, kind: DetectionKind) -> Optional[DetectionSnapshot]:
        return self._snapshots.get(DetectionKind(kind))

    def latest_pose(self) -> Optional[PoseDetection]:
        snapshot = self._snapshots.get(DetectionKind.POSE)
        return snapshot.result if snapshot else None

    def error(self, kind: DetectionKind) -> Optional[str]:
        return self._errors.get(DetectionKind(kind))

    def staleness(self, kind: DetectionKind, current_frame: int) -> Optional[int]:
        """Frames between what is on screen and the latest result (None if no result)."""
        snapshot = self.latest(kind)
        if snapshot is None:
            return None
        return current_frame - snapshot.frame_idx

    def average_confidence(self, kind: DetectionKind, identity: Hashable) -> Optional[float]:
        aggregate = self._aggregates.get(DetectionKind(kind), {}).get(identity)
        return aggregate.mean if aggregate else None

    def aggregates(self, kind: DetectionKind) -> Dict[Hashable, ConfidenceAggregate]:
        return dict(self._aggregates.get(DetectionKind(kind), {}))

    def clear(self) -> None:
        self._snapshots.clear()
        self._aggregates.clear()
        self._high_water.clear()
        self._errors.clear()
        self.version += 1
