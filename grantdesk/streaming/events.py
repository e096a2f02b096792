"""Event-stream frame types and serialization for pipeline runs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class FrameType(str, Enum):
    """Frame types written on a pipeline event stream."""

    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not FrameType.PROGRESS


@dataclass(frozen=True)
class ProgressFrame:
    """Advisory progress for one unit of work inside a phase."""

    stage: str
    current: int
    total: int
    percent: int
    item_label: str = ""
    phase: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "current": self.current,
            "total": self.total,
            "percent": self.percent,
            "itemLabel": self.item_label,
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressFrame:
        """Build from a decoded payload, tolerating missing or odd fields."""
        return cls(
            stage=str(data.get("stage", "")),
            current=_as_int(data.get("current")),
            total=_as_int(data.get("total")),
            percent=_as_int(data.get("percent")),
            item_label=str(data.get("itemLabel") or data.get("programName") or ""),
            phase=_as_int(data.get("phase")),
        )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass
class SSEEvent:
    """A single frame ready for wire serialization."""

    event_type: FrameType
    data: dict[str, Any]
    sequence_id: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.event_type.is_terminal

    def to_sse_string(self) -> str:
        """Serialize to the wire format.

        Format:
            event: <type>
            data: <json>

            (terminated by a blank line)
        """
        data_json = json.dumps(self.data, default=str, ensure_ascii=False)
        return f"event: {self.event_type.value}\ndata: {data_json}\n\n"


def progress_event(frame: ProgressFrame, sequence_id: int = 0) -> SSEEvent:
    return SSEEvent(FrameType.PROGRESS, frame.to_dict(), sequence_id)


def complete_event(result: dict[str, Any], sequence_id: int = 0) -> SSEEvent:
    return SSEEvent(FrameType.COMPLETE, result, sequence_id)


def error_event(message: str, sequence_id: int = 0) -> SSEEvent:
    return SSEEvent(FrameType.ERROR, {"error": message}, sequence_id)
