"""
SSE frame decoder with partial-line buffering and malformed-line recovery.

Chunks arrive at arbitrary boundaries: a line may be split across two chunks
and several lines may share one. The decoder keeps a single residual buffer,
emits frames only for complete lines, and never aborts a stream over one bad
line.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterable, Iterable, Iterator
from typing import Any

from .models import DecodedFrame, DecoderStats, FrameType

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class FrameDecoder:
    """Turns raw byte/text chunks into discrete stream frames."""

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False
        self.stats = DecoderStats()

    @property
    def closed(self) -> bool:
        """True once the terminal frame has been produced."""
        return self._closed

    def feed(self, chunk: bytes | str) -> list[DecodedFrame]:
        """
        Consume one chunk and return frames for every line it completes.

        A chunk that completes no line yields nothing. Input after the
        terminal frame is ignored.
        """
        if self._closed:
            return []

        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        frames: list[DecodedFrame] = []
        for line in lines:
            frames.extend(self._process_line(line))
            if self._closed:
                break
        return frames

    def finish(self) -> list[DecodedFrame]:
        """
        Flush at end of transport.

        The residual fragment is processed as a final line, and a terminal
        frame is emitted if the stream ended without one.
        """
        if self._closed:
            return []

        tail = self._utf8.decode(b"", final=True)
        self._buffer += tail
        frames: list[DecodedFrame] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            frames.extend(self._process_line(line))

        if not self._closed:
            self._closed = True
            frames.append(DecodedFrame.end())
        return frames

    def _process_line(self, raw_line: str) -> list[DecodedFrame]:
        """Decode one complete line into zero, one or two frames."""
        self.stats.lines += 1
        line = raw_line.strip()

        if not line.startswith(DATA_PREFIX):
            # Blank lines, comments and other SSE fields
            self.stats.skipped_lines += 1
            return [DecodedFrame.ignorable(line)]

        payload = line[len(DATA_PREFIX):].strip()
        if payload == DONE_SENTINEL:
            self._closed = True
            return [DecodedFrame.end()]

        try:
            record = json.loads(payload)
        except json.JSONDecodeError as e:
            self.stats.malformed_lines += 1
            logger.debug(f"Skipping malformed stream line: {e}")
            return [DecodedFrame.ignorable(payload)]

        if not isinstance(record, dict):
            self.stats.malformed_lines += 1
            return [DecodedFrame.ignorable(payload)]

        return self._frames_from_record(record, payload)

    def _frames_from_record(
        self, record: dict[str, Any], payload: str
    ) -> list[DecodedFrame]:
        choices = record.get("choices")
        if not isinstance(choices, list) or not choices:
            return [DecodedFrame.ignorable(payload)]

        choice = choices[0] if isinstance(choices[0], dict) else {}
        delta = choice.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None

        frames: list[DecodedFrame] = []
        if isinstance(content, str) and content:
            self.stats.content_frames += 1
            frames.append(DecodedFrame.content(content))

        if finish_reason := choice.get("finish_reason"):
            self._closed = True
            frames.append(DecodedFrame.end(str(finish_reason)))

        return frames or [DecodedFrame.ignorable(payload)]

    async def decode(
        self, chunks: AsyncIterable[bytes | str]
    ) -> AsyncGenerator[DecodedFrame]:
        """
        Decode an async chunk source into content frames and one end frame.

        Ignorable frames are dropped. Returns right after the terminal frame
        without reading the rest of the source.
        """
        async for chunk in chunks:
            for frame in self.feed(chunk):
                if frame.type is not FrameType.IGNORABLE:
                    yield frame
                if frame.is_terminal:
                    return

        for frame in self.finish():
            if frame.type is not FrameType.IGNORABLE:
                yield frame


def iter_frames(chunks: Iterable[bytes | str]) -> Iterator[DecodedFrame]:
    """Synchronous decode of an in-memory chunk sequence."""
    decoder = FrameDecoder()
    for chunk in chunks:
        for frame in decoder.feed(chunk):
            if frame.type is not FrameType.IGNORABLE:
                yield frame
            if frame.is_terminal:
                return
    for frame in decoder.finish():
        if frame.type is not FrameType.IGNORABLE:
            yield frame
