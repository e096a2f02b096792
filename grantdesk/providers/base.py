from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class RawProgram:
    """One program listing as returned by a ProgramSource."""

    id: str
    program_name: str
    organizer: str = ""
    support_type: str = ""
    support_scale: str = ""
    target_audience: str = ""
    description: str = ""
    official_end_date: str = ""
    detail_url: str = ""
    source: str = ""
    expected_grant: int = 0
    regions: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)


@dataclass
class CrawlResult:
    """Fields scraped from a program's detail page."""

    content: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    attachment_links: list[dict[str, str]] = field(default_factory=list)


class ProgramSource(ABC):
    """Supplies raw candidate records. May fail wholesale."""

    @abstractmethod
    async def fetch_all(self) -> list[RawProgram]:
        ...


class Crawler(ABC):
    """Fetches and scrapes a program detail page."""

    @abstractmethod
    async def crawl(self, url: str, program_name: str) -> Optional[CrawlResult]:
        """Return None when the page had nothing usable."""
        ...


class DataSourceProvider(ABC):
    """One optional input to a tax scan (NPS, DART, EI, ...)."""

    name: str = ""

    @abstractmethod
    async def fetch(self, company: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Return the source's data for the company, or None if not found."""
        ...
