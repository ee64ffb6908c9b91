"""
Streaming functionality for LLM clients.

This module contains:
- SSE frame decoding with partial-line buffering
- Recovery from malformed stream lines
"""

from .models import DecodedFrame, DecoderStats, FrameType
from .parser import FrameDecoder, iter_frames

__all__ = [
    "DecodedFrame",
    "DecoderStats",
    "FrameDecoder",
    "FrameType",
    "iter_frames",
]
