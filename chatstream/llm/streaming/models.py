"""
Streaming-specific dataclasses for the frame decoder.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FrameType(Enum):
    """Kinds of decoded stream frames."""
    CONTENT = "content"
    END = "end"
    IGNORABLE = "ignorable"


@dataclass(frozen=True)
class DecodedFrame:
    """One protocol event decoded from the event stream."""
    type: FrameType
    text: str = ""
    finish_reason: str | None = None

    @classmethod
    def content(cls, text: str) -> DecodedFrame:
        return cls(FrameType.CONTENT, text)

    @classmethod
    def end(cls, finish_reason: str | None = None) -> DecodedFrame:
        return cls(FrameType.END, finish_reason=finish_reason)

    @classmethod
    def ignorable(cls, raw: str = "") -> DecodedFrame:
        return cls(FrameType.IGNORABLE, raw)

    @property
    def is_terminal(self) -> bool:
        return self.type is FrameType.END


@dataclass
class DecoderStats:
    """Counters for decoder monitoring."""
    lines: int = 0
    content_frames: int = 0
    skipped_lines: int = 0
    malformed_lines: int = 0
