"""OpportunityRegistry: read-side views over one scan's opportunities."""

from __future__ import annotations

from typing import Iterable, Optional

from .errors import OpportunityNotFoundError
from .models import DataSource, Difficulty, Opportunity, OpportunityStatus

REAL_SOURCES = frozenset({DataSource.NPS_API, DataSource.DART_API})
ESTIMATED_SOURCES = frozenset({DataSource.ESTIMATED, DataSource.COMPANY_PROFILE})

_DIFFICULTY_ORDER = {Difficulty.EASY: 0, Difficulty.MODERATE: 1, Difficulty.COMPLEX: 2}

SORT_KEYS = ("refund", "confidence", "difficulty")


class OpportunityRegistry:
    """Holds the opportunities of a scan in their stored order."""

    def __init__(self, opportunities: Iterable[Opportunity] = ()) -> None:
        self._items: list[Opportunity] = list(opportunities)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)

    def all(self) -> list[Opportunity]:
        return list(self._items)

    def get(self, opp_id: str) -> Opportunity:
        for opp in self._items:
            if opp.id == opp_id:
                return opp
        raise OpportunityNotFoundError(opp_id)

    def total_estimated_refund(self) -> int:
        return sum(o.estimated_refund for o in self._items)

    def view(
        self,
        status: str = "all",
        source: str = "all",
        sort_by: Optional[str] = "refund",
    ) -> list[Opportunity]:
        """Filtered and sorted copy of the list.

        ``status`` is "all" or an OpportunityStatus value; ``source`` is
        "all", "real" (NPS/DART data) or "estimated" (profile-based).
        """
        items = self._items
        if status != "all":
            wanted = OpportunityStatus(status)
            items = [o for o in items if o.status is wanted]
        if source == "real":
            items = [o for o in items if o.data_source in REAL_SOURCES]
        elif source == "estimated":
            items = [o for o in items if o.data_source in ESTIMATED_SOURCES]
        elif source != "all":
            raise ValueError(f"Unknown source filter: {source}")

        if sort_by == "refund":
            return sorted(items, key=lambda o: o.estimated_refund, reverse=True)
        if sort_by == "confidence":
            return sorted(items, key=lambda o: o.confidence, reverse=True)
        if sort_by == "difficulty":
            return sorted(items, key=lambda o: _DIFFICULTY_ORDER[o.difficulty])
        if sort_by is None:
            return list(items)
        raise ValueError(f"Unknown sort key: {sort_by}")
