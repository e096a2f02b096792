"""Tests for TaxScanService: scans and the persisted worksheet operations."""

import pytest

from grantdesk.pipeline.programs import COMPANY_PROFILE_KEY
from grantdesk.providers.base import DataSourceProvider
from grantdesk.tax import (
    InvalidOverrideError,
    InvalidTransitionError,
    OpportunityNotFoundError,
    OpportunityStatus,
    ScanNotFoundError,
    TaxScanService,
    WorksheetMissingError,
)
from grantdesk.tax.errors import CompanyProfileMissingError

from conftest import COMPANY, FakeAnalyzer

OPPORTUNITIES = [
    {
        "taxBenefitCode": "EMPLOYMENT_INCREASE",
        "taxBenefitName": "고용증대 세액공제",
        "estimatedRefund": 35_000_000,
        "confidence": 80,
        "difficulty": "EASY",
        "dataSource": "COMPANY_PROFILE",
        "applicableYears": [2023, 2024, 2025],
        "legalBasis": ["조세특례제한법 제29조의7"],
    },
    {
        "taxBenefitCode": "SOCIAL_INSURANCE",
        "taxBenefitName": "사회보험료 세액공제",
        "estimatedRefund": 6_000_000,
        "confidence": 70,
        "difficulty": "MODERATE",
        "dataSource": "ESTIMATED",
    },
    {"taxBenefitCode": "BROKEN", "confidence": 400},
]


class StaticProvider(DataSourceProvider):
    def __init__(self, name, data=None, error=None):
        self.name = name
        self.data = data
        self.error = error

    async def fetch(self, company):
        if self.error is not None:
            raise self.error
        return self.data


@pytest.fixture
def tax_analyzer():
    analyzer = FakeAnalyzer()
    analyzer.tax_result = {"opportunities": OPPORTUNITIES, "summary": "2건의 공제 기회"}
    return analyzer


@pytest.fixture
def service(company_store, tax_analyzer):
    return TaxScanService(
        company_store,
        tax_analyzer,
        providers=[
            StaticProvider("nps", {"found": True, "workplace": {"employees": 24}}),
            StaticProvider("dart", error=ConnectionError("dart down")),
        ],
    )


class TestScan:
    @pytest.mark.asyncio
    async def test_scan_persists_identified_opportunities(self, service, company_store):
        """Valid opportunities get ids and identified status; malformed ones are dropped."""
        scan = await service.scan()

        assert scan.opportunity_count == 2
        assert scan.total_estimated_refund == 41_000_000
        assert all(o.status is OpportunityStatus.IDENTIFIED for o in scan.opportunities)
        assert all(o.id.startswith("opp-") for o in scan.opportunities)
        assert scan.data_sources == {"nps": True, "dart": False, "benefitHistory": False}
        assert scan.data_completeness == 50
        assert scan.company_snapshot["name"] == COMPANY["name"]
        assert scan.disclaimer
        assert await company_store.exists(f"benefits/tax-scan-{scan.id}")

    @pytest.mark.asyncio
    async def test_scan_requires_company_profile(self, store, tax_analyzer):
        with pytest.raises(CompanyProfileMissingError):
            await TaxScanService(store, tax_analyzer).scan()

    @pytest.mark.asyncio
    async def test_benefit_history_is_passed_along(self, company_store, tax_analyzer):
        await company_store.write(
            "benefits/benefit-b1",
            {"type": "benefit", "programName": "고용창출장려금", "receivedAmount": 9_000_000},
        )
        seen = {}

        async def capture(company, sources):
            seen.update(sources)
            return tax_analyzer.tax_result

        tax_analyzer.analyze_tax_opportunities = capture
        scan = await TaxScanService(company_store, tax_analyzer).scan()

        assert seen["benefitHistory"]["items"][0]["programName"] == "고용창출장려금"
        assert scan.data_sources["benefitHistory"] is True

    @pytest.mark.asyncio
    async def test_latest_scan(self, service):
        first = await service.scan()
        second = await service.scan()
        latest = await service.latest_scan()
        assert latest.id == max([first, second], key=lambda s: s.scanned_at).id

    @pytest.mark.asyncio
    async def test_latest_scan_none(self, store, tax_analyzer):
        assert await TaxScanService(store, tax_analyzer).latest_scan() is None


class TestWorksheetOperations:
    @pytest.mark.asyncio
    async def test_generate_then_override_round_trips_through_store(self, service):
        """Generation and overrides are persisted and keep refund == total."""
        scan = await service.scan()
        opp = scan.opportunities[0]

        worksheet = await service.generate_worksheet(scan.id, opp.id)
        assert worksheet.total_refund == 46_200_000

        updated = await service.update_worksheet_overrides(scan.id, opp.id, {"added_employees": 5})
        assert updated.total_refund == 115_500_000

        stored = (await service.latest_scan()).opportunities[0]
        assert stored.status is OpportunityStatus.REVIEWING
        assert stored.estimated_refund == stored.worksheet.total_refund == 115_500_000
        assert stored.worksheet.user_overrides == {"added_employees": 5}
        assert (await service.latest_scan()).total_estimated_refund == 115_500_000 + 6_000_000

    @pytest.mark.asyncio
    async def test_status_update_persisted(self, service):
        scan = await service.scan()
        opp = scan.opportunities[1]
        await service.update_opportunity_status(scan.id, opp.id, "dismissed")
        stored = (await service.latest_scan()).opportunities[1]
        assert stored.status is OpportunityStatus.DISMISSED

    @pytest.mark.asyncio
    async def test_invalid_transition_not_persisted(self, service):
        scan = await service.scan()
        opp = scan.opportunities[0]
        with pytest.raises(InvalidTransitionError):
            await service.update_opportunity_status(scan.id, opp.id, "received")
        assert (await service.latest_scan()).opportunities[0].status is OpportunityStatus.IDENTIFIED

    @pytest.mark.asyncio
    async def test_combined_edit_is_atomic(self, service):
        """A bad status in a combined edit discards the overrides too."""
        scan = await service.scan()
        opp = scan.opportunities[0]
        await service.generate_worksheet(scan.id, opp.id)

        with pytest.raises(InvalidTransitionError):
            await service.update_opportunity(
                scan.id, opp.id, status="received", overrides={"added_employees": 9}
            )

        stored = (await service.latest_scan()).opportunities[0]
        assert stored.worksheet.item("added_employees").value == 2
        assert stored.status is OpportunityStatus.REVIEWING

    @pytest.mark.asyncio
    async def test_override_without_worksheet(self, service):
        scan = await service.scan()
        with pytest.raises(WorksheetMissingError):
            await service.update_worksheet_overrides(scan.id, scan.opportunities[0].id, {"x": 1})

    @pytest.mark.asyncio
    async def test_empty_edit_rejected(self, service):
        scan = await service.scan()
        with pytest.raises(InvalidOverrideError):
            await service.update_opportunity(scan.id, scan.opportunities[0].id)

    @pytest.mark.asyncio
    async def test_unknown_ids(self, service):
        scan = await service.scan()
        with pytest.raises(ScanNotFoundError):
            await service.generate_worksheet("missing", scan.opportunities[0].id)
        with pytest.raises(OpportunityNotFoundError):
            await service.generate_worksheet(scan.id, "opp-missing")

    @pytest.mark.asyncio
    async def test_profile_removed_after_scan(self, service, company_store):
        scan = await service.scan()
        await company_store.delete(COMPANY_PROFILE_KEY)
        with pytest.raises(CompanyProfileMissingError):
            await service.generate_worksheet(scan.id, scan.opportunities[0].id)

    @pytest.mark.asyncio
    async def test_review_requires_worksheet(self, service):
        """Moving to reviewing by hand is rejected; the worksheet can still be generated."""
        scan = await service.scan()
        opp = scan.opportunities[0]

        with pytest.raises(InvalidTransitionError):
            await service.update_opportunity_status(scan.id, opp.id, "reviewing")

        assert (await service.latest_scan()).opportunities[0].status is OpportunityStatus.IDENTIFIED
        worksheet = await service.generate_worksheet(scan.id, opp.id)
        assert worksheet.total_refund == 46_200_000

    @pytest.mark.asyncio
    async def test_reviewing_to_reviewing_rejected(self, service):
        scan = await service.scan()
        opp = scan.opportunities[0]
        await service.generate_worksheet(scan.id, opp.id)
        with pytest.raises(InvalidTransitionError):
            await service.update_opportunity_status(scan.id, opp.id, "reviewing")
