"""Shared fakes for pipeline, tax and API tests."""

from __future__ import annotations

from collections import Counter
from typing import Any, Optional

import pytest
import pytest_asyncio

from grantdesk.analyzer.base import (
    Analyzer,
    EnrichmentResult,
    FitResult,
    PrescreenVerdict,
    RefundAnalysis,
)
from grantdesk.pipeline import PaceLimiter, PipelineRunner
from grantdesk.pipeline.programs import (
    COMPANY_PROFILE_KEY,
    make_slug,
    program_key,
    program_to_content,
    program_to_metadata,
)
from grantdesk.providers.base import CrawlResult, Crawler, ProgramSource, RawProgram
from grantdesk.store.notes import InMemoryNoteStore

COMPANY = {
    "name": "한빛소프트랩",
    "industry": "소프트웨어 개발",
    "region": "대전",
    "employees": 24,
    "revenue": 3_200_000_000,
    "employeeIncrease": 2,
}


def make_program(n: int, name: Optional[str] = None, **overrides: Any) -> RawProgram:
    data = {
        "id": f"PBLN_{n:04d}",
        "program_name": name or f"지원사업 {n}",
        "organizer": "중소벤처기업부",
        "support_scale": "최대 5천만원",
        "description": f"지원사업 {n} 공고",
        "official_end_date": "2099-12-31",
        "detail_url": f"https://example.go.kr/programs/{n}",
        "source": "odcloud",
    }
    data.update(overrides)
    return RawProgram(**data)


async def seed_program(store, program: RawProgram, **metadata: Any) -> str:
    """Write a program note as a previous run would have left it."""
    slug = make_slug(program.program_name, program.id)
    note = program_to_metadata(program, slug)
    note.update(metadata)
    await store.write(program_key(slug), note, program_to_content(program))
    return program_key(slug)


ANALYZED = {
    "enrichmentPhase": 3,
    "status": "analyzed",
    "fitScore": 72,
    "prescreenedAt": "2026-01-01T00:00:00+00:00",
}


class FakeSource(ProgramSource):
    def __init__(self, programs=(), error: Optional[Exception] = None):
        self.programs = list(programs)
        self.error = error
        self.calls = 0

    async def fetch_all(self) -> list[RawProgram]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.programs)


class FakeCrawler(Crawler):
    def __init__(self, fail_urls=()):
        self.fail_urls = set(fail_urls)
        self.urls: list[str] = []

    async def crawl(self, url: str, program_name: str) -> Optional[CrawlResult]:
        self.urls.append(url)
        if url in self.fail_urls:
            raise RuntimeError(f"HTTP 503 for {url}")
        return CrawlResult(
            content=f"{program_name} 상세 공고 본문입니다. 신청자격과 제출서류를 확인하세요.",
            fields={"applicationMethod": "온라인 접수", "contactInfo": "042-000-0000"},
            attachment_links=[{"url": f"{url}/file.hwp", "filename": "공고문.hwp"}],
        )


class FakeAnalyzer(Analyzer):
    """Deterministic analyzer; failures are opted into per program name."""

    def __init__(self, fit_score: int = 75):
        self.fit_score = fit_score
        self.scores: dict[str, int] = {}
        self.reject_ids: set[str] = set()
        self.fail_fit: set[str] = set()
        self.fail_enrich: set[str] = set()
        self.prescreen_error: Optional[Exception] = None
        self.strategy_error: Optional[Exception] = None
        self.tax_result: dict[str, Any] = {"opportunities": [], "summary": ""}
        self.worksheet_draft: Optional[dict[str, Any]] = None
        self.refund_eligible = True
        self.calls: Counter = Counter()

    async def prescreen(self, company, programs):
        self.calls["prescreen"] += 1
        if self.prescreen_error is not None:
            raise self.prescreen_error
        return [
            PrescreenVerdict(
                id=p["id"],
                passed=p["id"] not in self.reject_ids,
                reason="지역 요건 불충족" if p["id"] in self.reject_ids else "",
            )
            for p in programs
        ]

    async def enrich(self, program, crawled_content):
        self.calls["enrich"] += 1
        if program["programName"] in self.fail_enrich:
            raise RuntimeError("model overloaded")
        return EnrichmentResult(
            fields={"eligibilityCriteria": ["중소기업"], "requiredDocuments": ["사업계획서"]},
            attachments_downloaded=1,
            data_quality_score=80,
        )

    async def analyze_fit(self, company, program):
        self.calls["analyze_fit"] += 1
        name = program["programName"]
        if name in self.fail_fit:
            raise RuntimeError("model overloaded")
        score = self.scores.get(name, self.fit_score)
        return FitResult(
            score=score,
            eligibility="적합" if score >= 60 else "검토 필요",
            dimensions={"eligibilityMatch": score},
            strengths=["업력 충족"],
            advice="사업계획서를 보완하세요.",
        )

    async def generate_strategy(self, company, program, fit):
        self.calls["generate_strategy"] += 1
        if self.strategy_error is not None:
            raise self.strategy_error
        return f"# {program['programName']} 신청 전략\n"

    async def analyze_refund_eligibility(self, company, benefit):
        self.calls["analyze_refund_eligibility"] += 1
        return RefundAnalysis(
            is_eligible=self.refund_eligible,
            estimated_refund=1_200_000 if self.refund_eligible else 0,
            legal_basis=["고용보험법 제20조"],
            advice="경정청구를 검토하세요.",
        )

    async def analyze_tax_opportunities(self, company, data_sources):
        self.calls["analyze_tax_opportunities"] += 1
        return self.tax_result

    async def generate_worksheet(self, opportunity, context):
        self.calls["generate_worksheet"] += 1
        if self.worksheet_draft is None:
            raise RuntimeError("no draft configured")
        return self.worksheet_draft


class FakeClock:
    """Monotonic clock whose sleep just advances time."""

    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class EventLog:
    """Collects emitted frames in order."""

    def __init__(self):
        self.events = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]

    @property
    def progress(self) -> list[dict[str, Any]]:
        return [e.data for e in self.events if e.event_type.value == "progress"]


@pytest.fixture
def store():
    return InMemoryNoteStore()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def crawler():
    return FakeCrawler()


@pytest_asyncio.fixture
async def company_store(store):
    await store.write(COMPANY_PROFILE_KEY, dict(COMPANY), "")
    return store


def build_runner(store, source=None, crawler=None, analyzer=None, **kwargs) -> PipelineRunner:
    return PipelineRunner(
        store=store,
        source=source or FakeSource(),
        crawler=crawler or FakeCrawler(),
        analyzer=analyzer or FakeAnalyzer(),
        analyzer_pacer=kwargs.pop("analyzer_pacer", PaceLimiter(0, name="analyzer")),
        crawler_pacer=kwargs.pop("crawler_pacer", PaceLimiter(0, name="crawler")),
        **kwargs,
    )
