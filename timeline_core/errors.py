"""
Exception types surfaced by the timeline engine.

Sprite generation and explicit seeks report failures to callers. Detection
stream problems, invalid drag targets and overlapping drags degrade silently.
"""


class TimelineError(Exception):
    """Base class for engine errors."""


class SeekError(TimelineError):
    """The source reported an error while seeking."""

    def __init__(self, timestamp: float, message: str):
        super().__init__(message)
        self.timestamp = timestamp


class SeekTimeoutError(SeekError):
    """A seek did not complete within the configured timeout."""

    def __init__(self, timestamp: float, timeout: float):
        super().__init__(
            timestamp, f"Seek to {timestamp:.3f}s did not complete within {timeout:.1f}s"
        )
        self.timeout = timeout


class ThumbnailGenerationError(TimelineError):
    """Sprite sheet generation failed (single attempt, not retried)."""


class MetadataTimeoutError(ThumbnailGenerationError):
    """Video duration did not become available in time."""


class InvalidDurationError(ThumbnailGenerationError):
    """Video reported a zero, negative or non-finite duration."""
