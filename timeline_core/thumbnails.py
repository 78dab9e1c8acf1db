"""
================================================================================
THUMBNAIL SPRITE MODULE
================================================================================
Scrub-preview sprite sheets and their WebVTT cue files.

For N thumbnails over a video of duration D:

    1. Wait (bounded) for metadata to learn D
    2. Lay out N fixed-size tiles in a columns x rows grid
    3. For tile i: seek to i * D / N, wait for 'seeked', settle, draw
    4. Encode the sheet and emit one cue per tile:

        WEBVTT

        00:00:00.000 --> 00:00:00.100
        blob:...#xywh=0,0,160,90

Both outputs are registry handles the caller must release. Generation is
idempotent per source identity and can be cancelled at any tile; a cancelled
run releases its partial surface and detaches its seek listener.
================================================================================
"""

import asyncio
import bisect
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from configs.config import ThumbnailConfig
from timeline_core.cancellation import CancellableTask, CancellationToken, TaskStatus
from timeline_core.errors import (
    InvalidDurationError,
    MetadataTimeoutError,
    SeekError,
    ThumbnailGenerationError,
)
from timeline_core.media import (
    FrameSource,
    OpenCVRasterizer,
    Rasterizer,
    ResourceRegistry,
    SeekArbiter,
    seek_and_wait,
)

logger = logging.getLogger(__name__)

SPRITE_PLACEHOLDER = "SPRITE_URL"


class SpriteStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class CueEntry:
    """One tile: a time range and its rectangle in the sprite."""
    start: float
    end: float
    x: int
    y: int
    width: int
    height: int

    @property
    def rect(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)

    def to_vtt(self, sprite_ref: str) -> str:
        return (
            f"{format_timestamp(self.start)} --> {format_timestamp(self.end)}\n"
            f"{sprite_ref}#xywh={self.x},{self.y},{self.width},{self.height}\n\n"
        )


@dataclass
class SpriteCache:
    """Generation state for the current source."""
    source_id: Optional[str] = None
    sprite_handle: Optional[str] = None
    cue_handle: Optional[str] = None
    progress: float = 0.0
    status: SpriteStatus = SpriteStatus.IDLE
    error: Optional[BaseException] = None
    entries: List[CueEntry] = field(default_factory=list)
    cue_text: str = ""

    @property
    def generating(self) -> bool:
        return self.status == SpriteStatus.GENERATING

    @property
    def ready(self) -> bool:
        return self.status == SpriteStatus.READY

    def cue_at(self, time: float) -> Optional[CueEntry]:
        """Tile covering a playback time (None outside the video)."""
        if not self.entries or time < 0 or time > self.entries[-1].end:
            return None
        starts = [entry.start for entry in self.entries]
        index = bisect.bisect_right(starts, time) - 1
        return self.entries[max(index, 0)]


# ==============================================================================
# LAYOUT HELPERS
# ==============================================================================

def compute_grid(count: int, columns: int) -> Tuple[int, int]:
    """(columns, rows) needed to hold count tiles."""
    if count < 1 or columns < 1:
        raise ValueError("count and columns must be at least 1")
    cols = min(columns, count)
    return cols, math.ceil(count / cols)


def format_timestamp(seconds: float) -> str:
    """Seconds -> HH:MM:SS.mmm"""
    total_ms = int(round(max(seconds, 0.0) * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def build_cue_entries(
    duration: float,
    count: int,
    tile_width: int,
    tile_height: int,
    columns: int,
) -> List[CueEntry]:
    """
    Contiguous cues covering [0, duration].

    Each range ends where the next starts; the last one ends exactly at
    duration.
    """
    cols, _ = compute_grid(count, columns)
    interval = duration / count
    entries = []
    for i in range(count):
        row, col = divmod(i, cols)
        end = duration if i == count - 1 else (i + 1) * interval
        entries.append(CueEntry(
            start=i * interval,
            end=end,
            x=col * tile_width,
            y=row * tile_height,
            width=tile_width,
            height=tile_height,
        ))
    return entries


def build_vtt(entries: List[CueEntry], sprite_ref: str = SPRITE_PLACEHOLDER) -> str:
    return "WEBVTT\n\n" + "".join(entry.to_vtt(sprite_ref) for entry in entries)


# ==============================================================================
# GENERATOR
# ==============================================================================

class ThumbnailSpriteGenerator:
    """
    Builds and owns the sprite sheet for one source at a time.

    Example:
        >>> generator = ThumbnailSpriteGenerator(registry=registry)
        >>> task = generator.ensure(source)
        >>> cache = await task.wait()
        >>> registry.get(cache.cue_handle).data[:6]
        b'WEBVTT'
    """

    OWNER = "thumbnails"

    def __init__(
        self,
        config: Optional[ThumbnailConfig] = None,
        rasterizer: Optional[Rasterizer] = None,
        registry: Optional[ResourceRegistry] = None,
        arbiter: Optional[SeekArbiter] = None,
    ):
        self.config = config or ThumbnailConfig()
        self.rasterizer = rasterizer or OpenCVRasterizer(self.config.jpeg_quality)
        self.registry = registry or ResourceRegistry()
        self.arbiter = arbiter or SeekArbiter()
        self.cache = SpriteCache()
        self._task: Optional[CancellableTask] = None

    def ensure(self, source: FrameSource) -> CancellableTask:
        """
        Generate for source unless that exact source is already built or
        building. Work for any other source is cancelled and released first.
        """
        if self.cache.source_id == source.source_id and self._task is not None:
            if self._task.status == TaskStatus.RUNNING or self.cache.ready:
                return self._task

        self.release()
        self.cache = SpriteCache(source_id=source.source_id, status=SpriteStatus.GENERATING)
        self._task = CancellableTask(
            lambda token: self.generate(source, token), name="thumbnail-sprite"
        )
        return self._task

    async def generate(
        self,
        source: FrameSource,
        token: Optional[CancellationToken] = None,
    ) -> SpriteCache:
        """
        Build the sprite sheet and cue file for source.

        Raises:
            MetadataTimeoutError: Duration not known within metadata_timeout
            InvalidDurationError: Duration is zero, negative or not finite
            ThumbnailGenerationError: A tile's seek failed or timed out
                (the SeekError is chained as __cause__), or rasterizing
                or encoding failed
        """
        token = token or CancellationToken()
        config = self.config

        if self.cache.source_id != source.source_id:
            self.release()
            self.cache = SpriteCache(source_id=source.source_id)
        cache = self.cache
        cache.status = SpriteStatus.GENERATING
        cache.progress = 0.0
        cache.error = None

        surface = None
        sprite_handle = None
        cue_handle = None
        try:
            try:
                metadata = await asyncio.wait_for(source.wait_metadata(), config.metadata_timeout)
            except asyncio.TimeoutError:
                raise MetadataTimeoutError(
                    f"Video metadata not available after {config.metadata_timeout:.1f}s"
                ) from None

            duration = metadata.duration
            if not (math.isfinite(duration) and duration > 0):
                raise InvalidDurationError(f"Invalid video duration: {duration}")

            cols, rows = compute_grid(config.count, config.columns)
            entries = build_cue_entries(
                duration, config.count, config.tile_width, config.tile_height, config.columns
            )
            surface = self.rasterizer.create_surface(cols * config.tile_width,
                                                     rows * config.tile_height)
            logger.debug("Generating %d thumbnails (%dx%d grid) for %s",
                         config.count, cols, rows, source.source_id)

            for i, entry in enumerate(entries):
                token.raise_if_cancelled()
                async with self.arbiter.exclusive(self.OWNER):
                    await seek_and_wait(source, entry.start, config.seek_timeout)
                    if config.settle_delay > 0:
                        await asyncio.sleep(config.settle_delay)
                    frame = source.read_frame()
                if frame is not None:
                    self.rasterizer.draw(surface, frame, entry.rect)
                cache.progress = (i + 1) / config.count

            token.raise_if_cancelled()
            sprite_handle = self.registry.create(self.rasterizer.encode(surface), "image/jpeg")
            cue_text = build_vtt(entries, sprite_handle)
            cue_handle = self.registry.create(cue_text.encode("utf-8"), "text/vtt")

        except asyncio.CancelledError:
            self.registry.release(sprite_handle)
            self.registry.release(cue_handle)
            cache.status = SpriteStatus.IDLE
            cache.progress = 0.0
            logger.debug("Thumbnail generation cancelled for %s", source.source_id)
            raise
        except ThumbnailGenerationError as exc:
            self._fail(cache, exc, sprite_handle, cue_handle)
            raise
        except (SeekError, RuntimeError, ValueError) as exc:
            error = ThumbnailGenerationError(str(exc))
            self._fail(cache, error, sprite_handle, cue_handle)
            raise error from exc
        finally:
            if surface is not None:
                self.rasterizer.release(surface)

        cache.sprite_handle = sprite_handle
        cache.cue_handle = cue_handle
        cache.entries = entries
        cache.cue_text = cue_text
        cache.status = SpriteStatus.READY
        logger.info("Generated %d thumbnails for %s", len(entries), source.source_id)
        return cache

    def _fail(self, cache: SpriteCache, error: BaseException, *handles: Optional[str]) -> None:
        for handle in handles:
            self.registry.release(handle)
        cache.status = SpriteStatus.ERROR
        cache.error = error
        logger.warning("Thumbnail generation failed: %s", error)

    def cancel(self) -> None:
        """Abort in-flight generation. Safe to call repeatedly."""
        if self._task is not None:
            self._task.cancel()
        if self.cache.generating:
            self.cache.status = SpriteStatus.IDLE
            self.cache.progress = 0.0

    def release(self) -> None:
        """Cancel, then release the sprite and cue handles."""
        self.cancel()
        self.registry.release(self.cache.sprite_handle)
        self.registry.release(self.cache.cue_handle)
        self.cache.sprite_handle = None
        self.cache.cue_handle = None
        if self.cache.ready:
            self.cache.status = SpriteStatus.IDLE
        self._task = None
