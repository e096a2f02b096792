"""Event-stream infrastructure for pipeline progress."""

from .decoder import Frame, FrameDecoder
from .events import FrameType, ProgressFrame, SSEEvent
from .manager import StreamManager

__all__ = ["Frame", "FrameDecoder", "FrameType", "ProgressFrame", "SSEEvent", "StreamManager"]
