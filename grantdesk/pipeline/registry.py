"""Tracks the active run per tenant so overlapping runs are rejected."""

from __future__ import annotations

import logging
from typing import Optional

from .state import RunAlreadyActive, RunKind, SyncRun

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "default"


class RunRegistry:
    """At most one non-terminal SyncRun per tenant."""

    def __init__(self) -> None:
        self._active: dict[str, SyncRun] = {}

    def start(
        self,
        kind: RunKind,
        force_reanalyze: bool = False,
        tenant: str = DEFAULT_TENANT,
    ) -> SyncRun:
        current = self._active.get(tenant)
        if current is not None and not current.state.is_terminal:
            raise RunAlreadyActive(
                f"A {current.kind.value} run ({current.run_id}) is already active"
            )
        run = SyncRun(kind=kind, force_reanalyze=force_reanalyze)
        self._active[tenant] = run
        logger.info("Accepted %s run %s (force=%s)", kind.value, run.run_id, force_reanalyze)
        return run

    def finish(self, run: SyncRun, tenant: str = DEFAULT_TENANT) -> None:
        if self._active.get(tenant) is run:
            del self._active[tenant]

    def active(self, tenant: str = DEFAULT_TENANT) -> Optional[SyncRun]:
        return self._active.get(tenant)
