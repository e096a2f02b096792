"""Run state for pipeline invocations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


class RunKind(str, Enum):
    SYNC = "sync"
    ANALYZE_ALL = "analyze-all"
    BENEFIT_ANALYZE_ALL = "benefit-analyze-all"


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.ABORTED)


class ItemStatus(str, Enum):
    """Persisted status tag on a candidate item."""

    SYNCED = "synced"
    PRESCREEN_REJECTED = "prescreen_rejected"
    CRAWLED = "crawled"
    ENRICHED = "enriched"
    ANALYZED = "analyzed"
    REFUND_ELIGIBLE = "refund_eligible"
    ERROR = "error"


# enrichmentPhase marker for items rejected by prescreen
PHASE_REJECTED = 99


class RunFailed(Exception):
    """Infrastructure failure before any item was processed."""


class RunAborted(Exception):
    """The consumer went away; stop scheduling work."""


class RunAlreadyActive(Exception):
    """Another run is in flight for this tenant."""


@dataclass
class PhaseCounters:
    created: int = 0
    updated: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass
class SyncRun:
    """One invocation of the pipeline. Mutated only by PipelineRunner."""

    kind: RunKind
    force_reanalyze: bool = False
    run_id: str = field(default_factory=lambda: uuid4().hex)
    started_at: datetime = field(default_factory=_now)
    state: RunState = RunState.PENDING
    phase: int = 0
    phase_counters: dict[int, PhaseCounters] = field(default_factory=dict)
    stats: dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    aborted_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None
    _abort_requested: bool = field(default=False, repr=False)

    def counters(self, phase: int) -> PhaseCounters:
        if phase not in self.phase_counters:
            self.phase_counters[phase] = PhaseCounters()
        return self.phase_counters[phase]

    def bump(self, key: str, amount: int = 1) -> None:
        self.stats[key] = self.stats.get(key, 0) + amount

    def request_abort(self) -> None:
        """Cooperative cancellation; safe to call at any time."""
        self._abort_requested = True

    @property
    def abort_requested(self) -> bool:
        return self._abort_requested

    def enter_phase(self, phase: int) -> None:
        self.state = RunState.RUNNING
        self.phase = phase

    def complete(self) -> None:
        self.state = RunState.COMPLETED
        self.completed_at = _now()

    def fail(self, message: str) -> None:
        self.state = RunState.FAILED
        self.failed_at = _now()
        self.error = message

    def abort(self) -> None:
        self.state = RunState.ABORTED
        self.aborted_at = _now()

    def per_phase_counts(self) -> dict[str, dict[str, int]]:
        return {str(p): c.to_dict() for p, c in sorted(self.phase_counters.items())}
