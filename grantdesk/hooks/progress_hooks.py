"""Maps pipeline phases to user-facing stage labels and overall percent."""

from __future__ import annotations

import math
from typing import Awaitable, Callable

from grantdesk.streaming.events import ProgressFrame, SSEEvent, progress_event

# Stage key -> (label when the phase starts, label while items are processed)
_STAGE_LABELS: dict[str, tuple[str, str]] = {
    "collect": ("API 데이터 수집 중", "프로그램 저장 중"),
    "prescreen": ("AI 사전심사 시작", "AI 사전심사 중"),
    "crawl": ("URL 크롤링 시작", "URL 크롤링 중"),
    "enrich": ("AI 강화 시작", "AI 강화 중"),
    "fit": ("AI 분석 시작", "AI 분석 중"),
    "benefit": ("환급 분석 시작", "환급 분석 중"),
}

_DEFAULT_LABEL = "처리 중"

# Share of the overall percent owned by each sync phase.
SYNC_PHASE_WEIGHTS: dict[int, int] = {1: 10, 2: 10, 3: 20, 4: 30, 5: 30}
SINGLE_PHASE_WEIGHTS: dict[int, int] = {0: 100}


def get_stage_label(stage: str, started: bool = False) -> str:
    """Return the label for a stage key.

    Unknown stages get a generic "처리 중" label.
    """
    labels = _STAGE_LABELS.get(stage)
    if labels is None:
        return _DEFAULT_LABEL
    return labels[0] if started else labels[1]


class ProgressReporter:
    """Turns per-item progress into frames with a never-decreasing percent."""

    def __init__(
        self,
        emit: Callable[[SSEEvent], Awaitable[None]],
        weights: dict[int, int],
    ) -> None:
        self._emit = emit
        self._weights = weights
        self._last_percent = 0
        self._seq = 0

    @property
    def last_percent(self) -> int:
        return self._last_percent

    def percent_for(self, phase: int, current: int, total: int) -> int:
        offset = sum(w for p, w in self._weights.items() if p < phase)
        weight = self._weights.get(phase, 0)
        fraction = current / total if total > 0 else 0.0
        value = math.floor(offset + weight * min(fraction, 1.0))
        return max(self._last_percent, min(100, max(0, value)))

    async def phase_started(self, phase: int, stage: str, total: int) -> None:
        await self._send(phase, get_stage_label(stage, started=True), 0, total, "")

    async def item_done(
        self, phase: int, stage: str, current: int, total: int, item_label: str = ""
    ) -> None:
        await self._send(phase, get_stage_label(stage), current, total, item_label)

    async def _send(
        self, phase: int, label: str, current: int, total: int, item_label: str
    ) -> None:
        percent = self.percent_for(phase, current, total)
        self._last_percent = percent
        self._seq += 1
        frame = ProgressFrame(
            stage=label,
            current=current,
            total=total,
            percent=percent,
            item_label=item_label,
            phase=phase,
        )
        await self._emit(progress_event(frame, sequence_id=self._seq))
