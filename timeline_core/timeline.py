"""
================================================================================
TIMELINE EVENT MODULE
================================================================================
Swing / event markers and the drag gesture that edits their boundaries.

Events come from upstream analysis and are immutable. User edits are kept in
a separate adjustment overlay keyed by (event id, edge); the boundaries shown
and saved are always the pure merge of the two.

Drag state machine (one session at a time):

    IDLE --press handle--> DRAGGING --move past threshold--> PREVIEW
      ^                        |                                |
      |<---release (click: seek to event start)                 |
      |<---release (commit clamped preview) --------------------|
      |<---cancel (nothing written) ----------------------------|

The preview is clamped on every move so the dragged edge never comes closer
than min_duration to the opposite edge; an invalid range is never shown and
never committed.
================================================================================
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from configs.config import TimelineConfig
from timeline_core.frame_clock import FrameClock

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    POINT = "point"
    RANGE = "range"


class Edge(str, Enum):
    START = "start"
    END = "end"


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    PREVIEW = "preview"


class GestureOutcome(str, Enum):
    COMMITTED = "committed"
    SEEK = "seek"
    CANCELLED = "cancelled"
    IGNORED = "ignored"


# ==============================================================================
# DATA STRUCTURES
# ==============================================================================

@dataclass(frozen=True)
class TimelineEvent:
    """A labeled point or range on the video timeline."""
    id: str
    label: str
    start_frame: int
    end_frame: int
    start_time: float
    end_time: float
    kind: EventKind = EventKind.RANGE
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def has_handles(self) -> bool:
        """Point events cannot be resized."""
        return self.kind == EventKind.RANGE and self.start_frame != self.end_frame

    @classmethod
    def from_frames(
        cls,
        event_id: str,
        start_frame: int,
        end_frame: int,
        fps: float,
        label: str = "",
        **metadata,
    ) -> "TimelineEvent":
        kind = EventKind.POINT if start_frame == end_frame else EventKind.RANGE
        return cls(
            id=event_id,
            label=label,
            start_frame=start_frame,
            end_frame=end_frame,
            start_time=start_frame / fps,
            end_time=end_frame / fps,
            kind=kind,
            metadata=metadata,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fps: float) -> "TimelineEvent":
        """
        Build from an analysis record.

        Accepts either frame numbers ('start_frame'/'end_frame') or seconds
        ('start'/'end'); unknown keys are kept as metadata.
        """
        known = {"id", "label", "kind", "start", "end", "start_frame", "end_frame"}
        metadata = {k: v for k, v in data.items() if k not in known}

        if "start_frame" in data:
            start_frame, end_frame = int(data["start_frame"]), int(data["end_frame"])
            start_time, end_time = start_frame / fps, end_frame / fps
        else:
            start_time, end_time = float(data["start"]), float(data.get("end", data["start"]))
            start_frame, end_frame = int(round(start_time * fps)), int(round(end_time * fps))

        default_kind = "point" if start_frame == end_frame else "range"
        return cls(
            id=str(data["id"]),
            label=data.get("label", ""),
            start_frame=start_frame,
            end_frame=end_frame,
            start_time=start_time,
            end_time=end_time,
            kind=EventKind(data.get("kind", default_kind)),
            metadata=metadata,
        )


@dataclass(frozen=True)
class BoundaryAdjustment:
    event_id: str
    edge: Edge
    adjusted_time: float
    adjusted_frame: int


@dataclass(frozen=True)
class EffectiveBoundaries:
    event_id: str
    start_time: float
    end_time: float
    start_frame: int
    end_frame: int
    is_adjusted: bool

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "start": self.start_time,
            "end": self.end_time,
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
            "adjusted": self.is_adjusted,
        }


@dataclass
class DragSession:
    """In-progress edit. edge is None for a press on the event body."""
    event_id: str
    edge: Optional[Edge]
    original_time: float
    preview_time: float
    press_x: Optional[float] = None
    state: DragState = DragState.DRAGGING


@dataclass(frozen=True)
class GestureResult:
    outcome: GestureOutcome
    event_id: Optional[str] = None
    edge: Optional[Edge] = None
    time: Optional[float] = None


# ==============================================================================
# PURE HELPERS
# ==============================================================================

def effective_boundaries(
    event: TimelineEvent,
    adjustments: Optional[Mapping[Edge, BoundaryAdjustment]] = None,
) -> EffectiveBoundaries:
    """Merge an event with its adjustments (adjusted edge wins)."""
    adjustments = adjustments or {}
    start = adjustments.get(Edge.START)
    end = adjustments.get(Edge.END)
    return EffectiveBoundaries(
        event_id=event.id,
        start_time=start.adjusted_time if start else event.start_time,
        end_time=end.adjusted_time if end else event.end_time,
        start_frame=start.adjusted_frame if start else event.start_frame,
        end_frame=end.adjusted_frame if end else event.end_frame,
        is_adjusted=bool(adjustments),
    )


def clamp_edge(edge: Edge, time: float, other: float, min_duration: float) -> float:
    """Keep a dragged edge at least min_duration away from the opposite edge."""
    if edge == Edge.START:
        return min(time, other - min_duration)
    return max(time, other + min_duration)


# ==============================================================================
# MODEL
# ==============================================================================

class TimelineEventModel:
    """
    Events, their adjustment overlay, and the single drag session.

    Pointer positions are track x coordinates in pixels; set_geometry()
    maps them onto [0, duration]. Until the duration is known, pointer
    moves leave the preview where it is.

    on_seek receives the event start when a press ends as a click;
    on_preview receives every clamped preview time while dragging an edge.

    Example:
        >>> model = TimelineEventModel(events, duration=10.0)
        >>> model.press_handle("e1", Edge.END, x=200)
        True
        >>> model.move(240)
        >>> model.release().outcome
        <GestureOutcome.COMMITTED: 'committed'>
    """

    def __init__(
        self,
        events: Iterable[TimelineEvent] = (),
        config: Optional[TimelineConfig] = None,
        frame_clock: Optional[FrameClock] = None,
        duration: Optional[float] = None,
        on_seek: Optional[Callable[[float], None]] = None,
        on_preview: Optional[Callable[[float], None]] = None,
    ):
        self.config = config or TimelineConfig()
        self.frame_clock = frame_clock or FrameClock()
        self.duration = duration
        self.track_width_px = self.config.track_width_px
        self.on_seek = on_seek
        self.on_preview = on_preview

        self._events: Dict[str, TimelineEvent] = {}
        self._adjustments: Dict[str, Dict[Edge, BoundaryAdjustment]] = {}
        self.session: Optional[DragSession] = None
        self.dirty = False
        self.load_events(events)

    # ------------------------------------------------------------------
    # Events and geometry
    # ------------------------------------------------------------------

    def load_events(self, events: Iterable[TimelineEvent]) -> None:
        """Replace the event set; adjustments for vanished events are dropped."""
        self._events = {event.id: event for event in events}
        self._adjustments = {
            event_id: edges for event_id, edges in self._adjustments.items()
            if event_id in self._events
        }
        if self.session is not None and self.session.event_id not in self._events:
            self.session = None

    @property
    def events(self) -> List[TimelineEvent]:
        return list(self._events.values())

    def get_event(self, event_id: str) -> Optional[TimelineEvent]:
        return self._events.get(event_id)

    def set_geometry(self, duration: float, track_width_px: Optional[float] = None) -> None:
        self.duration = duration
        if track_width_px is not None:
            self.track_width_px = track_width_px

    @property
    def has_geometry(self) -> bool:
        duration = self.duration
        return (
            duration is not None and math.isfinite(duration) and duration > 0
            and self.track_width_px > 0
        )

    def time_at(self, x: float) -> Optional[float]:
        """
        Track x -> time. Positions off the track clamp to its ends.

        Returns:
            None while the duration is unknown
        """
        if not self.has_geometry:
            return None
        x = min(max(x, 0.0), self.track_width_px)
        return x / self.track_width_px * self.duration

    def x_at(self, time: float) -> Optional[float]:
        if not self.has_geometry:
            return None
        return time / self.duration * self.track_width_px

    # ------------------------------------------------------------------
    # Effective boundaries
    # ------------------------------------------------------------------

    def effective(self, event_id: str) -> EffectiveBoundaries:
        return effective_boundaries(self._events[event_id], self._adjustments.get(event_id))

    def effective_map(self) -> Dict[str, EffectiveBoundaries]:
        return {event_id: self.effective(event_id) for event_id in self._events}

    def display_boundaries(self, event_id: str) -> EffectiveBoundaries:
        """Effective boundaries with the live preview substituted in."""
        current = self.effective(event_id)
        session = self.session
        if session is None or session.event_id != event_id or session.state != DragState.PREVIEW:
            return current

        frame = self.frame_clock.frame_at(session.preview_time)
        if session.edge == Edge.START:
            return EffectiveBoundaries(event_id, session.preview_time, current.end_time,
                                       frame, current.end_frame, True)
        return EffectiveBoundaries(event_id, current.start_time, session.preview_time,
                                   current.start_frame, frame, True)

    def adjustments(self) -> List[BoundaryAdjustment]:
        return [adj for edges in self._adjustments.values() for adj in edges.values()]

    def reset_adjustment(self, event_id: str, edge: Optional[Edge] = None) -> bool:
        edges = self._adjustments.get(event_id)
        if not edges:
            return False
        if edge is None:
            del self._adjustments[event_id]
        elif edges.pop(Edge(edge), None) is None:
            return False
        elif not edges:
            del self._adjustments[event_id]
        self.dirty = True
        return True

    def mark_saved(self) -> None:
        self.dirty = False

    # ------------------------------------------------------------------
    # Gestures
    # ------------------------------------------------------------------

    def press_handle(self, event_id: str, edge: Edge, x: Optional[float] = None) -> bool:
        """
        Start a boundary drag.

        Returns:
            False (and nothing changes) if a session is already live, the
            event is unknown, or the event has no handles
        """
        if self.session is not None:
            logger.debug("Drag on %s rejected: session already active", event_id)
            return False
        event = self._events.get(event_id)
        if event is None or not event.has_handles:
            return False

        edge = Edge(edge)
        current = self.effective(event_id)
        original = current.start_time if edge == Edge.START else current.end_time
        self.session = DragSession(event_id, edge, original, original, press_x=x)
        return True

    def press_body(self, event_id: str, x: Optional[float] = None) -> bool:
        """Press on the event body; it can only ever become a click."""
        if self.session is not None or event_id not in self._events:
            return False
        start = self.effective(event_id).start_time
        self.session = DragSession(event_id, None, start, start, press_x=x)
        return True

    def _clamped(self, time: float) -> float:
        session = self.session
        current = self.effective(session.event_id)
        time = max(0.0, time)
        if self.has_geometry:
            time = min(time, self.duration)
        other = current.end_time if session.edge == Edge.START else current.start_time
        return clamp_edge(session.edge, time, other, self.config.min_duration)

    def move(self, x: float) -> None:
        session = self.session
        if session is None or session.edge is None:
            return
        time = self.time_at(x)
        if time is None:
            logger.debug("Move ignored: timeline duration not known yet")
            return
        if session.state == DragState.DRAGGING:
            if session.press_x is not None and abs(x - session.press_x) < self.config.click_threshold_px:
                return
            session.state = DragState.PREVIEW
        self._set_preview(session, time)

    def preview_to(self, time: float) -> Optional[float]:
        """Set the preview directly in seconds. Returns the clamped time."""
        session = self.session
        if session is None or session.edge is None:
            return None
        session.state = DragState.PREVIEW
        return self._set_preview(session, time)

    def _set_preview(self, session: DragSession, time: float) -> float:
        session.preview_time = self._clamped(time)
        if self.on_preview is not None:
            self.on_preview(session.preview_time)
        return session.preview_time

    def release(self, x: Optional[float] = None) -> GestureResult:
        """
        End the gesture: commit a preview, or treat a press without
        movement as a click that seeks to the event start.
        """
        session = self.session
        if session is None:
            return GestureResult(GestureOutcome.IGNORED)
        if x is not None:
            self.move(x)
        self.session = None

        if session.edge is None or session.state != DragState.PREVIEW:
            start = self.effective(session.event_id).start_time
            if self.on_seek is not None:
                self.on_seek(start)
            return GestureResult(GestureOutcome.SEEK, session.event_id, None, start)

        adjustment = BoundaryAdjustment(
            event_id=session.event_id,
            edge=session.edge,
            adjusted_time=session.preview_time,
            adjusted_frame=self.frame_clock.frame_at(session.preview_time),
        )
        self._adjustments.setdefault(session.event_id, {})[session.edge] = adjustment
        self.dirty = True
        logger.debug("Committed %s %s -> %.3fs", session.event_id, session.edge.value,
                     session.preview_time)
        return GestureResult(GestureOutcome.COMMITTED, session.event_id, session.edge,
                             session.preview_time)

    def cancel(self) -> GestureResult:
        session, self.session = self.session, None
        if session is None:
            return GestureResult(GestureOutcome.IGNORED)
        return GestureResult(GestureOutcome.CANCELLED, session.event_id, session.edge)

    @property
    def drag_state(self) -> DragState:
        return self.session.state if self.session else DragState.IDLE
