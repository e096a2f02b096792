"""Worksheet templates for the tax credits that can be computed from a
company profile alone.

Each builder is a pure function: it lays out line items and the fixed
subtotal grouping. Totals are left at zero; WorksheetEngine computes them.
Amounts are in won (원).
"""

from typing import Any

from grantdesk.tax.models import (
    LineItem,
    LineItemSource,
    Opportunity,
    Subtotal,
    SubtotalOperation,
    Worksheet,
)
from grantdesk.tax.template_registry import register_template

# 조세특례제한법 제29조의7: per added employee, SMEs outside the capital region
EMPLOYMENT_CREDIT_PER_HEAD = 7_700_000
EMPLOYMENT_CREDIT_YEARS = 3

# 조세특례제한법 제30조의4: employer share of social insurance, credited at 50%
EMPLOYER_INSURANCE_RATE = 0.1
SOCIAL_INSURANCE_CREDIT_RATE = 0.5
SOCIAL_INSURANCE_CREDIT_YEARS = 2

DEFAULT_AVERAGE_SALARY = 36_000_000


def _headcount_source(context: dict[str, Any]) -> tuple[int, LineItemSource]:
    """Added head count, preferring NPS data over the profile."""
    nps = context.get("nps") or {}
    if nps.get("employeeIncrease"):
        return int(nps["employeeIncrease"]), LineItemSource.NPS_API
    company = context.get("company") or {}
    increase = int(company.get("employeeIncrease") or 0)
    return max(increase, 1), LineItemSource.COMPANY_PROFILE


@register_template(
    code="EMPLOYMENT_INCREASE",
    label="고용증대 세액공제",
    legal_basis="조세특례제한법 제29조의7",
)
def employment_increase(opportunity: Opportunity, context: dict[str, Any]) -> Worksheet:
    added, source = _headcount_source(context)
    years = len(opportunity.applicable_years) or EMPLOYMENT_CREDIT_YEARS
    return Worksheet(
        title="고용증대 세액공제 계산서",
        line_items=[
            LineItem(
                key="added_employees",
                label="상시근로자 증가 인원",
                value=added,
                unit="명",
                source=source,
                editable=True,
            ),
            LineItem(
                key="credit_per_employee",
                label="1인당 공제액",
                value=EMPLOYMENT_CREDIT_PER_HEAD,
                unit="원",
                source=LineItemSource.TAX_LAW,
            ),
            LineItem(
                key="credit_years",
                label="공제 적용 연수",
                value=years,
                unit="년",
                source=LineItemSource.TAX_LAW,
                editable=True,
            ),
        ],
        subtotals=[
            Subtotal(
                label="고용증대 공제 합계",
                keys=["added_employees", "credit_per_employee", "credit_years"],
                operation=SubtotalOperation.PRODUCT,
            ),
        ],
        assumptions=[
            "수도권 밖 중소기업 기준 1인당 공제액을 적용했습니다.",
            "증가 인원이 공제 기간 동안 유지된다고 가정합니다.",
        ],
    )


@register_template(
    code="SOCIAL_INSURANCE",
    label="사회보험료 세액공제",
    legal_basis="조세특례제한법 제30조의4",
)
def social_insurance(opportunity: Opportunity, context: dict[str, Any]) -> Worksheet:
    added, source = _headcount_source(context)
    company = context.get("company") or {}
    salary = int(company.get("averageSalary") or DEFAULT_AVERAGE_SALARY)
    return Worksheet(
        title="사회보험료 세액공제 계산서",
        line_items=[
            LineItem(
                key="added_employees",
                label="상시근로자 증가 인원",
                value=added,
                unit="명",
                source=source,
                editable=True,
            ),
            LineItem(
                key="average_salary",
                label="1인당 평균 총급여",
                value=salary,
                unit="원",
                source=LineItemSource.COMPANY_PROFILE,
                editable=True,
            ),
            LineItem(
                key="employer_rate",
                label="사용자 부담 사회보험료율",
                value=EMPLOYER_INSURANCE_RATE,
                unit="비율",
                source=LineItemSource.TAX_LAW,
            ),
            LineItem(
                key="credit_years",
                label="공제 적용 연수",
                value=SOCIAL_INSURANCE_CREDIT_YEARS,
                unit="년",
                source=LineItemSource.TAX_LAW,
            ),
        ],
        subtotals=[
            Subtotal(
                label="사회보험료 공제 합계 (50%)",
                keys=["added_employees", "average_salary", "employer_rate", "credit_years"],
                operation=SubtotalOperation.PRODUCT,
                factor=SOCIAL_INSURANCE_CREDIT_RATE,
            ),
        ],
        assumptions=[
            "청년 외 근로자 기준 공제율 50%를 적용했습니다.",
            "사용자 부담 보험료율은 약 10%로 추정했습니다.",
        ],
    )
