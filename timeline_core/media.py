"""
================================================================================
MEDIA CAPABILITY MODULE
================================================================================
Abstractions over the playback surface the engine consumes:

    - FrameSource: a seekable video with event listeners and
      frame-presentation callbacks (the browser <video> element's role)
    - Rasterizer: an offscreen drawing surface for sprite sheets
    - ResourceRegistry: ephemeral handles that callers must release
    - SeekArbiter: exclusive ownership of a shared FrameSource while seeking

Two FrameSource implementations ship here: OpenCVFrameSource decodes real
files with cv2.VideoCapture, SyntheticFrameSource runs on a virtual clock
for deterministic tests and offline replays.
================================================================================
"""

import asyncio
import itertools
import logging
import math
import threading
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union

import numpy as np
import cv2

from timeline_core.errors import SeekError, SeekTimeoutError

logger = logging.getLogger(__name__)

Rect = Tuple[int, int, int, int]  # (x, y, width, height)


# ==============================================================================
# DATA STRUCTURES
# ==============================================================================

@dataclass
class VideoMetadata:
    """Container for video source metadata."""
    source_id: str
    width: int
    height: int
    fps: float
    frame_count: int
    duration: float
    codec: str = ""

    def __str__(self) -> str:
        return (
            f"Video: {self.source_id}\n"
            f"  Resolution: {self.width}x{self.height}\n"
            f"  FPS: {self.fps:.2f}\n"
            f"  Duration: {self.duration:.2f}s ({self.frame_count} frames)\n"
            f"  Codec: {self.codec or 'unknown'}"
        )


@dataclass
class FrameCallbackInfo:
    """Metadata delivered with each presented frame."""
    media_time: float
    presented_frames: int


FrameCallback = Callable[[float, FrameCallbackInfo], None]


# ==============================================================================
# CAPABILITY INTERFACES
# ==============================================================================

class FrameSource(Protocol):
    """Seekable video surface shared by the engine's consumers."""

    source_id: str
    paused: bool
    ended: bool
    supports_frame_callbacks: bool

    @property
    def duration(self) -> float: ...

    async def wait_metadata(self) -> VideoMetadata: ...

    def seek(self, timestamp: float) -> None: ...

    def read_frame(self) -> Optional[np.ndarray]: ...

    def add_listener(self, event: str, callback: Callable) -> None: ...

    def remove_listener(self, event: str, callback: Callable) -> None: ...

    def listener_count(self, event: Optional[str] = None) -> int: ...

    def request_frame_callback(self, callback: FrameCallback) -> int: ...

    def cancel_frame_callback(self, handle: int) -> None: ...


class Rasterizer(Protocol):
    """Offscreen surface used to compose sprite sheets."""

    def create_surface(self, width: int, height: int) -> np.ndarray: ...

    def draw(self, surface: np.ndarray, frame: np.ndarray, rect: Rect) -> None: ...

    def encode(self, surface: np.ndarray) -> bytes: ...

    def release(self, surface: np.ndarray) -> None: ...

    @property
    def live_surfaces(self) -> int: ...


# ==============================================================================
# EVENT PLUMBING
# ==============================================================================

class _EventEmitter:
    """Named-event listener registry (play, seeked, ended, error)."""

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}
        self._frame_callbacks: Dict[int, FrameCallback] = {}
        self._callback_ids = itertools.count(1)

    def add_listener(self, event: str, callback: Callable) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(callbacks) for callbacks in self._listeners.values())

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners.get(event, [])):
            callback(*args)

    def request_frame_callback(self, callback: FrameCallback) -> int:
        handle = next(self._callback_ids)
        self._frame_callbacks[handle] = callback
        return handle

    def cancel_frame_callback(self, handle: int) -> None:
        self._frame_callbacks.pop(handle, None)

    @property
    def pending_frame_callbacks(self) -> int:
        return len(self._frame_callbacks)

    def _present(self, now: float, info: FrameCallbackInfo) -> None:
        # Frame callbacks are one-shot, like requestVideoFrameCallback
        callbacks, self._frame_callbacks = self._frame_callbacks, {}
        for callback in callbacks.values():
            callback(now, info)


# ==============================================================================
# SYNTHETIC SOURCE
# ==============================================================================

class SyntheticFrameSource(_EventEmitter):
    """
    Deterministic FrameSource driven by a virtual clock.

    Frames are flat images whose pixel value encodes the frame index, so a
    tile in a sprite sheet can be traced back to the timestamp it was
    sampled at.

    Example:
        >>> source = SyntheticFrameSource(duration=4.0, fps=60)
        >>> source.play()          # presents frames every 1/60 s of virtual time
    """

    def __init__(
        self,
        duration: float = 10.0,
        fps: float = 30.0,
        width: int = 320,
        height: int = 180,
        source_id: Optional[str] = None,
        metadata_delay: Optional[float] = 0.0,
        seek_delay: float = 0.0,
        respond_to_seeks: bool = True,
        fail_seeks: bool = False,
        supports_frame_callbacks: bool = True,
        playback_rate: float = 1.0,
        jitter: float = 0.0,
    ):
        super().__init__()
        self.source_id = source_id or f"synthetic://{uuid.uuid4().hex[:8]}"
        self.fps = fps
        self.width = width
        self.height = height
        self.metadata_delay = metadata_delay
        self.seek_delay = seek_delay
        self.respond_to_seeks = respond_to_seeks
        self.fail_seeks = fail_seeks
        self.supports_frame_callbacks = supports_frame_callbacks
        self.playback_rate = playback_rate
        self.jitter = jitter

        self._duration = duration
        self._metadata_loaded = metadata_delay == 0
        self.current_time = 0.0
        self.paused = True
        self.ended = False
        self.seek_count = 0
        self.seek_history: List[float] = []

        self._wall_clock = 0.0
        self._presented = 0
        self._play_task: Optional[asyncio.Task] = None

    @property
    def duration(self) -> float:
        # Unknown (NaN) until metadata has loaded, like a <video> element
        return self._duration if self._metadata_loaded else float("nan")

    @property
    def metadata(self) -> VideoMetadata:
        return VideoMetadata(
            source_id=self.source_id,
            width=self.width,
            height=self.height,
            fps=self.fps,
            frame_count=int(round(self._duration * self.fps)) if math.isfinite(self._duration) else 0,
            duration=self._duration,
            codec="synthetic",
        )

    async def wait_metadata(self) -> VideoMetadata:
        if self.metadata_delay is None:
            # Never loads (simulates a stalled network source)
            await asyncio.Event().wait()
        elif self.metadata_delay > 0:
            await asyncio.sleep(self.metadata_delay)
        self._metadata_loaded = True
        return self.metadata

    def seek(self, timestamp: float) -> None:
        self.current_time = min(max(0.0, timestamp), self._duration)
        self.seek_count += 1
        self.seek_history.append(self.current_time)
        self.ended = False
        if not self.respond_to_seeks:
            return
        loop = asyncio.get_running_loop()
        if self.fail_seeks:
            loop.call_soon(self._emit, "error", RuntimeError("decode failed"))
        elif self.seek_delay > 0:
            loop.call_later(self.seek_delay, self._emit, "seeked")
        else:
            loop.call_soon(self._emit, "seeked")

    def frame_index_at(self, timestamp: float) -> int:
        return int(round(timestamp * self.fps))

    def read_frame(self) -> Optional[np.ndarray]:
        value = self.frame_index_at(self.current_time) % 256
        return np.full((self.height, self.width, 3), value, dtype=np.uint8)

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    def present_frame(self) -> None:
        """Advance one frame of virtual time and fire frame callbacks."""
        interval = 1.0 / self.fps
        wobble = self.jitter if self._presented % 2 else -self.jitter
        self._wall_clock += interval / self.playback_rate + wobble
        self.current_time = min(self.current_time + interval, self._duration)
        self._presented += 1
        self._present(
            self._wall_clock,
            FrameCallbackInfo(media_time=self.current_time, presented_frames=self._presented),
        )
        if self.current_time >= self._duration:
            self.ended = True
            self.paused = True
            self._emit("ended")

    def play(self) -> None:
        if not self.paused:
            return
        self.paused = False
        self.ended = False
        self._emit("play")
        self._play_task = asyncio.ensure_future(self._run())

    def pause(self) -> None:
        self.paused = True
        if self._play_task is not None and not self._play_task.done():
            self._play_task.cancel()
        self._play_task = None

    async def _run(self) -> None:
        while not self.paused and not self.ended:
            await asyncio.sleep(0)
            if self.paused:
                break
            self.present_frame()


# ==============================================================================
# OPENCV SOURCE
# ==============================================================================

class OpenCVFrameSource(_EventEmitter):
    """
    FrameSource backed by cv2.VideoCapture.

    Blocking decoder calls run in the default executor; 'seeked' is emitted
    back on the event loop once the target frame has been decoded.

    Example:
        >>> source = OpenCVFrameSource("rally.mp4")
        >>> metadata = await source.wait_metadata()
        >>> print(metadata)
    """

    supports_frame_callbacks = True

    def __init__(self, video_path: Union[str, Path]):
        super().__init__()
        self.video_path = Path(video_path)
        if not self.video_path.exists():
            raise FileNotFoundError(f"Video not found: {self.video_path}")

        self.source_id = str(self.video_path.resolve())
        self.metadata: Optional[VideoMetadata] = None
        self.current_time = 0.0
        self.paused = True
        self.ended = False

        self._cap: Optional[cv2.VideoCapture] = None
        self._frame: Optional[np.ndarray] = None
        self._decoder_lock = threading.Lock()
        self._opening: Optional[asyncio.Future] = None
        self._presented = 0
        self._play_task: Optional[asyncio.Task] = None

    @property
    def duration(self) -> float:
        return self.metadata.duration if self.metadata else float("nan")

    def _open(self) -> VideoMetadata:
        cap = cv2.VideoCapture(str(self.video_path))
        if not cap.isOpened():
            raise ValueError(f"Cannot open video: {self.video_path}")

        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = cap.get(cv2.CAP_PROP_FPS)
        frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
        duration = frame_count / fps if fps > 0 else 0.0

        fourcc_int = int(cap.get(cv2.CAP_PROP_FOURCC))
        codec = "".join([chr((fourcc_int >> 8 * i) & 0xFF) for i in range(4)])

        self._cap = cap
        return VideoMetadata(
            source_id=self.source_id,
            width=width,
            height=height,
            fps=fps,
            frame_count=frame_count,
            duration=duration,
            codec=codec,
        )

    async def wait_metadata(self) -> VideoMetadata:
        if self.metadata is None:
            # Concurrent callers share one open; a caller's timeout must not cancel it
            if self._opening is None:
                loop = asyncio.get_running_loop()
                self._opening = loop.run_in_executor(None, self._open)
            metadata = await asyncio.shield(self._opening)
            if self.metadata is None:
                self.metadata = metadata
                logger.debug("Loaded metadata:\n%s", self.metadata)
        return self.metadata

    def _decode_at(self, timestamp: float) -> None:
        with self._decoder_lock:
            self._cap.set(cv2.CAP_PROP_POS_MSEC, timestamp * 1000.0)
            ok, frame = self._cap.read()
            if ok:
                self._frame = frame

    def seek(self, timestamp: float) -> None:
        if self._cap is None:
            raise RuntimeError("Metadata not loaded. Await wait_metadata() first.")
        self.current_time = max(0.0, timestamp)
        self.ended = False
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._decode_at, self.current_time)
        future.add_done_callback(self._on_decoded)

    def _on_decoded(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("Decode failed for %s: %s", self.video_path.name, error)
            self._emit("error", error)
            return
        self._emit("seeked")

    def read_frame(self) -> Optional[np.ndarray]:
        return self._frame

    def _read_next(self) -> Tuple[bool, float]:
        with self._decoder_lock:
            ok, frame = self._cap.read()
            if ok:
                self._frame = frame
            return ok, self._cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0

    def play(self) -> None:
        if self._cap is None:
            raise RuntimeError("Metadata not loaded. Await wait_metadata() first.")
        if not self.paused:
            return
        self.paused = False
        self._emit("play")
        self._play_task = asyncio.ensure_future(self._run())

    def pause(self) -> None:
        self.paused = True
        if self._play_task is not None and not self._play_task.done():
            self._play_task.cancel()
        self._play_task = None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self.paused:
            ok, media_time = await loop.run_in_executor(None, self._read_next)
            if not ok:
                self.ended = True
                self.paused = True
                self._emit("ended")
                break
            self.current_time = media_time
            self._presented += 1
            self._present(
                time.perf_counter(),
                FrameCallbackInfo(media_time=media_time, presented_frames=self._presented),
            )

    def close(self) -> None:
        self.pause()
        if self._cap is not None:
            self._cap.release()
            self._cap = None


# ==============================================================================
# RASTERIZER
# ==============================================================================

class OpenCVRasterizer:
    """Numpy surfaces composed with cv2.resize and encoded as JPEG."""

    def __init__(self, jpeg_quality: int = 70):
        self.jpeg_quality = jpeg_quality
        self._surfaces: Dict[int, np.ndarray] = {}

    def create_surface(self, width: int, height: int) -> np.ndarray:
        surface = np.zeros((height, width, 3), dtype=np.uint8)
        self._surfaces[id(surface)] = surface
        return surface

    def draw(self, surface: np.ndarray, frame: np.ndarray, rect: Rect) -> None:
        x, y, w, h = rect
        src_h, src_w = frame.shape[:2]
        interp = cv2.INTER_AREA if w < src_w else cv2.INTER_LINEAR
        surface[y:y + h, x:x + w] = cv2.resize(frame, (w, h), interpolation=interp)

    def encode(self, surface: np.ndarray) -> bytes:
        ok, buffer = cv2.imencode(
            ".jpg", surface, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality]
        )
        if not ok:
            raise RuntimeError("Failed to encode sprite surface")
        return buffer.tobytes()

    def release(self, surface: np.ndarray) -> None:
        self._surfaces.pop(id(surface), None)

    @property
    def live_surfaces(self) -> int:
        return len(self._surfaces)


# ==============================================================================
# RESOURCE HANDLES
# ==============================================================================

@dataclass
class Resource:
    handle: str
    data: bytes
    mime_type: str


class ResourceRegistry:
    """
    Ephemeral in-memory resources addressed by opaque handles.

    Handles play the role of object URLs: whoever creates one must release
    it. ``live_count`` makes leaks observable.
    """

    def __init__(self):
        self._resources: Dict[str, Resource] = {}

    def create(self, data: bytes, mime_type: str) -> str:
        handle = f"blob:{uuid.uuid4().hex}"
        self._resources[handle] = Resource(handle=handle, data=data, mime_type=mime_type)
        return handle

    def get(self, handle: str) -> Resource:
        return self._resources[handle]

    def release(self, handle: Optional[str]) -> bool:
        if handle is None:
            return False
        return self._resources.pop(handle, None) is not None

    def handles(self) -> List[str]:
        return list(self._resources)

    @property
    def live_count(self) -> int:
        return len(self._resources)


# ==============================================================================
# SHARED SOURCE OWNERSHIP
# ==============================================================================

class SeekArbiter:
    """
    Exclusive-ownership lease for seeking a shared FrameSource.

    A holder keeps the lease from issuing the seek until it has consumed
    the decoded frame. Waiters are served in FIFO order, so user scrubbing
    interleaves with thumbnail generation one seek at a time and never
    races it.
    """

    def __init__(self):
        # Created on first use so it belongs to the running loop
        self._lock: Optional[asyncio.Lock] = None
        self.owner: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._lock is not None and self._lock.locked()

    @asynccontextmanager
    async def exclusive(self, owner: str):
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            self.owner = owner
            try:
                yield self
            finally:
                self.owner = None


async def seek_and_wait(source: FrameSource, timestamp: float, timeout: float) -> None:
    """
    Seek and suspend until the source reports 'seeked'.

    An 'error' event from the source fails the seek immediately. Both
    listeners are always detached, whether the seek completes, fails,
    times out or the awaiting task is cancelled.

    Raises:
        SeekError: If the source reports an error while seeking
        SeekTimeoutError: If 'seeked' does not arrive within timeout
    """
    loop = asyncio.get_running_loop()
    completed = loop.create_future()

    def on_seeked(*_args) -> None:
        if not completed.done():
            completed.set_result(None)

    def on_error(error: Optional[BaseException] = None, *_args) -> None:
        if not completed.done():
            completed.set_exception(
                SeekError(timestamp, f"Seek to {timestamp:.3f}s failed: {error}")
            )

    source.add_listener("seeked", on_seeked)
    source.add_listener("error", on_error)
    try:
        source.seek(timestamp)
        await asyncio.wait_for(completed, timeout)
    except asyncio.TimeoutError:
        raise SeekTimeoutError(timestamp, timeout) from None
    finally:
        source.remove_listener("seeked", on_seeked)
        source.remove_listener("error", on_error)
