"""Incremental decoder for the event-stream wire format.

Transport chunks never line up with frame boundaries, so the decoder keeps
whatever follows the last blank-line delimiter and prefixes it to the next
chunk. Multi-byte UTF-8 sequences split across chunks are handled by an
incremental codec.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"


@dataclass(frozen=True)
class Frame:
    """One decoded ``event:``/``data:`` unit."""

    event: str
    data: Any


class FrameDecoder:
    """Turns a byte stream into an ordered sequence of frames."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.dropped = 0

    def feed(self, chunk: bytes) -> list[Frame]:
        """Consume one transport chunk and return every frame it completes."""
        text = self._decoder.decode(chunk)
        if not text:
            return []
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        blocks = self._buffer.split(FRAME_DELIMITER)
        # Last block may be incomplete; keep it for the next read.
        self._buffer = blocks.pop()
        frames: list[Frame] = []
        for block in blocks:
            frame = self._parse_block(block)
            if frame is not None:
                frames.append(frame)
        return frames

    def close(self) -> list[Frame]:
        """Flush the codec at end of stream.

        A trailing block without its delimiter never completed and is
        discarded.
        """
        tail = self._decoder.decode(b"", final=True)
        leftover = (self._buffer + tail).strip()
        self._buffer = ""
        if leftover:
            logger.debug("Discarding incomplete trailing frame (%d chars)", len(leftover))
        return []

    def _parse_block(self, block: str) -> Optional[Frame]:
        if not block.strip():
            return None

        event_type = ""
        event_data = ""
        for line in block.split("\n"):
            if line.startswith("event:"):
                event_type = line[len("event:"):].strip()
            elif line.startswith("data:"):
                event_data = line[len("data:"):].lstrip(" ")

        if not event_type or not event_data:
            return None

        try:
            payload = json.loads(event_data)
        except json.JSONDecodeError:
            self.dropped += 1
            logger.warning("Dropping frame with malformed data: %s", event_data[:100])
            return None
        return Frame(event=event_type, data=payload)


def decode_all(chunks: list[bytes]) -> list[Frame]:
    """Decode a finite list of chunks in one go."""
    decoder = FrameDecoder()
    frames: list[Frame] = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    frames.extend(decoder.close())
    return frames
