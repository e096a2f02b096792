"""Analyzer interface: the scoring / estimation oracle behind the pipeline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class FitResult:
    score: int
    eligibility: str
    dimensions: dict[str, int] = field(default_factory=dict)
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    advice: str = ""
    key_actions: list[str] = field(default_factory=list)


@dataclass
class PrescreenVerdict:
    id: str
    passed: bool
    reason: str = ""


@dataclass
class EnrichmentResult:
    fields: dict[str, Any] = field(default_factory=dict)
    attachments_downloaded: int = 0
    data_quality_score: int = 0


@dataclass
class RefundAnalysis:
    is_eligible: bool
    estimated_refund: int = 0
    risk_level: str = "MEDIUM"
    legal_basis: list[str] = field(default_factory=list)
    required_documents: list[str] = field(default_factory=list)
    advice: str = ""


class Analyzer(ABC):
    """Best-effort, occasionally failing model calls.

    Every method may raise; callers count failures instead of propagating
    them.
    """

    @abstractmethod
    async def prescreen(
        self, company: dict[str, Any], programs: list[dict[str, Any]]
    ) -> list[PrescreenVerdict]:
        ...

    @abstractmethod
    async def enrich(self, program: dict[str, Any], crawled_content: str) -> EnrichmentResult:
        ...

    @abstractmethod
    async def analyze_fit(self, company: dict[str, Any], program: dict[str, Any]) -> FitResult:
        ...

    @abstractmethod
    async def generate_strategy(
        self, company: dict[str, Any], program: dict[str, Any], fit: FitResult
    ) -> str:
        """Markdown strategy document for a high-fit program."""
        ...

    @abstractmethod
    async def analyze_refund_eligibility(
        self, company: dict[str, Any], benefit: dict[str, Any]
    ) -> RefundAnalysis:
        ...

    @abstractmethod
    async def analyze_tax_opportunities(
        self, company: dict[str, Any], data_sources: dict[str, Optional[dict[str, Any]]]
    ) -> dict[str, Any]:
        """{"opportunities": [camelCase dicts], "summary": str, "disclaimer": str}"""
        ...

    @abstractmethod
    async def generate_worksheet(
        self, opportunity: dict[str, Any], context: dict[str, Any]
    ) -> dict[str, Any]:
        """Worksheet draft: title, lineItems, subtotals (with keys), assumptions."""
        ...
