"""TaxScanService: runs tax scans and the worksheet operations on them.

Scans are stored as notes under ``benefits/tax-scan-<id>``. Every
operation reads the scan, changes one opportunity, and writes the whole
scan back.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import uuid4

from pydantic import ValidationError

from grantdesk.analyzer.base import Analyzer
from grantdesk.pipeline.pacing import PaceLimiter
from grantdesk.pipeline.programs import COMPANY_PROFILE_KEY
from grantdesk.providers.base import DataSourceProvider
from grantdesk.store.notes import NoteNotFoundError, NoteStore

from .errors import (
    CompanyProfileMissingError,
    InvalidOverrideError,
    InvalidTransitionError,
    ScanNotFoundError,
)
from .models import Opportunity, OpportunityStatus, TaxScanResult, Worksheet
from .registry import OpportunityRegistry
from .status import transition
from .worksheet import WorksheetEngine

logger = logging.getLogger(__name__)

BENEFITS_PREFIX = "benefits"
SCAN_PREFIX = "tax-scan-"
BENEFIT_RECORD_PREFIX = "benefit-"

DISCLAIMER = "본 결과는 추정치이며 실제 환급액은 세무 전문가 검토 후 확정됩니다."


def scan_key(scan_id: str) -> str:
    return f"{BENEFITS_PREFIX}/{SCAN_PREFIX}{scan_id}"


class TaxScanService:
    def __init__(
        self,
        store: NoteStore,
        analyzer: Analyzer,
        engine: Optional[WorksheetEngine] = None,
        providers: Sequence[DataSourceProvider] = (),
        pacer: Optional[PaceLimiter] = None,
    ) -> None:
        self.store = store
        self.analyzer = analyzer
        self.pacer = pacer or PaceLimiter(0, name="tax-analyzer")
        self.engine = engine or WorksheetEngine(analyzer, self.pacer)
        self.providers = list(providers)

    async def _company(self) -> dict[str, Any]:
        try:
            company, _ = await self.store.read(COMPANY_PROFILE_KEY)
        except NoteNotFoundError:
            raise CompanyProfileMissingError(
                "No company profile on file; register the company first"
            ) from None
        return company

    async def _benefit_history(self) -> list[dict[str, Any]]:
        history = []
        for key in await self.store.list_keys(BENEFITS_PREFIX):
            if not key.split("/", 1)[1].startswith(BENEFIT_RECORD_PREFIX):
                continue
            metadata, _ = await self.store.read(key)
            if metadata.get("type") == "benefit":
                history.append(
                    {
                        "programName": metadata.get("programName", ""),
                        "category": metadata.get("category", ""),
                        "receivedAmount": metadata.get("receivedAmount", 0),
                        "receivedDate": metadata.get("receivedDate", ""),
                    }
                )
        return history

    async def _collect_sources(self, company: dict[str, Any]) -> dict[str, Optional[dict[str, Any]]]:
        sources: dict[str, Optional[dict[str, Any]]] = {}
        for provider in self.providers:
            try:
                sources[provider.name] = await provider.fetch(company)
            except Exception as e:
                logger.warning("Data source %s failed, continuing without it: %s", provider.name, e)
                sources[provider.name] = None
        return sources

    async def scan(self) -> TaxScanResult:
        """Detect tax-benefit opportunities for the stored company."""
        company = await self._company()
        history = await self._benefit_history()
        sources = await self._collect_sources(company)

        raw = await self.pacer.call(
            self.analyzer.analyze_tax_opportunities,
            company,
            {**sources, "benefitHistory": {"items": history} if history else None},
        )

        opportunities = []
        for entry in raw.get("opportunities") or []:
            data = {**entry, "id": f"opp-{uuid4().hex[:8]}", "status": "identified"}
            data.pop("worksheet", None)
            try:
                opportunities.append(Opportunity.model_validate(data))
            except ValidationError as e:
                logger.warning("Dropping malformed opportunity %s: %s", entry.get("taxBenefitCode"), e)

        found = [name for name, data in sources.items() if data]
        completeness = round(100 * len(found) / len(sources)) if sources else 0
        registry = OpportunityRegistry(opportunities)
        result = TaxScanResult(
            id=secrets.token_hex(6),
            scanned_at=datetime.now(tz=timezone.utc).isoformat(),
            opportunities=opportunities,
            total_estimated_refund=registry.total_estimated_refund(),
            opportunity_count=len(opportunities),
            data_completeness=completeness,
            data_sources={
                **{name: bool(data) for name, data in sources.items()},
                "benefitHistory": bool(history),
            },
            company_snapshot={
                "name": str(company.get("name") or ""),
                "industry": str(company.get("industry") or ""),
                "employees": int(company.get("employees") or 0),
                "revenue": int(company.get("revenue") or 0),
            },
            summary=str(raw.get("summary") or ""),
            disclaimer=str(raw.get("disclaimer") or DISCLAIMER),
        )
        await self._save(result, {name: data for name, data in sources.items() if data})
        logger.info(
            "Tax scan %s: %d opportunities, %d won estimated",
            result.id,
            result.opportunity_count,
            result.total_estimated_refund,
        )
        return result

    async def latest_scan(self) -> Optional[TaxScanResult]:
        latest: Optional[TaxScanResult] = None
        for key in await self.store.list_keys(BENEFITS_PREFIX):
            if not key.split("/", 1)[1].startswith(SCAN_PREFIX):
                continue
            metadata, _ = await self.store.read(key)
            if metadata.get("type") != "tax-scan":
                continue
            scan = TaxScanResult.model_validate(metadata)
            if latest is None or scan.scanned_at > latest.scanned_at:
                latest = scan
        return latest

    async def _load(self, scan_id: str) -> tuple[TaxScanResult, dict[str, Any]]:
        try:
            metadata, _ = await self.store.read(scan_key(scan_id))
        except (NoteNotFoundError, ValueError):
            raise ScanNotFoundError(scan_id) from None
        return TaxScanResult.model_validate(metadata), metadata.get("sourceData") or {}

    async def _save(self, scan: TaxScanResult, source_data: dict[str, Any]) -> None:
        registry = OpportunityRegistry(scan.opportunities)
        scan.total_estimated_refund = registry.total_estimated_refund()
        scan.opportunity_count = len(registry)
        metadata = {
            "type": "tax-scan",
            **scan.model_dump(by_alias=True, mode="json"),
            "sourceData": source_data,
        }
        await self.store.write(scan_key(scan.id), metadata, scan.summary)

    async def generate_worksheet(self, scan_id: str, opp_id: str) -> Worksheet:
        scan, source_data = await self._load(scan_id)
        opportunity = OpportunityRegistry(scan.opportunities).get(opp_id)
        context = {"company": await self._company(), **source_data}
        worksheet = await self.engine.generate(opportunity, context)
        await self._save(scan, source_data)
        return worksheet

    async def update_worksheet_overrides(
        self, scan_id: str, opp_id: str, overrides: dict[str, Any]
    ) -> Worksheet:
        opportunity = await self.update_opportunity(scan_id, opp_id, overrides=overrides)
        return opportunity.worksheet

    async def update_opportunity_status(
        self, scan_id: str, opp_id: str, status: OpportunityStatus | str
    ) -> Opportunity:
        return await self.update_opportunity(scan_id, opp_id, status=status)

    async def update_opportunity(
        self,
        scan_id: str,
        opp_id: str,
        status: Optional[OpportunityStatus | str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> Opportunity:
        """Apply overrides and/or a status change as one all-or-nothing edit."""
        if status is None and overrides is None:
            raise InvalidOverrideError("Either status or userOverrides is required")
        scan, source_data = await self._load(scan_id)
        registry = OpportunityRegistry(scan.opportunities)
        original = registry.get(opp_id)

        edited = original.model_copy(deep=True)
        if overrides is not None:
            self.engine.apply_overrides(edited, overrides)
        if status is not None:
            # Only worksheet generation moves an opportunity into review.
            if status == OpportunityStatus.REVIEWING and edited.worksheet is None:
                raise InvalidTransitionError(
                    f"Generate a worksheet to move opportunity {opp_id} into review"
                )
            transition(edited, status)

        index = next(i for i, o in enumerate(scan.opportunities) if o.id == opp_id)
        scan.opportunities[index] = edited
        await self._save(scan, source_data)
        return edited
