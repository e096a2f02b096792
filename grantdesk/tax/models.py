"""Pydantic models for tax scans, opportunities and worksheets.

Field names are snake_case in Python and camelCase on disk and on the wire
(``model_dump(by_alias=True)``); either form is accepted on input.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Value = Union[int, float, str]


class LineItemSource(str, Enum):
    NPS_API = "NPS_API"
    COMPANY_PROFILE = "COMPANY_PROFILE"
    USER_INPUT = "USER_INPUT"
    CALCULATED = "CALCULATED"
    TAX_LAW = "TAX_LAW"


class DataSource(str, Enum):
    NPS_API = "NPS_API"
    DART_API = "DART_API"
    EI_API = "EI_API"
    COMPANY_PROFILE = "COMPANY_PROFILE"
    ESTIMATED = "ESTIMATED"


class Difficulty(str, Enum):
    EASY = "EASY"
    MODERATE = "MODERATE"
    COMPLEX = "COMPLEX"


class OpportunityStatus(str, Enum):
    IDENTIFIED = "identified"
    REVIEWING = "reviewing"
    FILED = "filed"
    RECEIVED = "received"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in (OpportunityStatus.RECEIVED, OpportunityStatus.DISMISSED)


class SubtotalOperation(str, Enum):
    SUM = "sum"
    PRODUCT = "product"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class LineItem(CamelModel):
    """One input or intermediate value on a worksheet."""

    key: str = Field(min_length=1)
    label: str = ""
    value: Value = 0
    unit: str = ""
    source: LineItemSource = LineItemSource.CALCULATED
    editable: bool = False

    @property
    def is_numeric(self) -> bool:
        return is_number(self.value)


class Subtotal(CamelModel):
    """A rollup over a fixed set of line items.

    ``amount`` is derived: ``factor * op(values of keys)``. The grouping
    (keys, operation, factor) is set when the worksheet is generated.
    """

    label: str
    amount: int = 0
    keys: list[str] = Field(default_factory=list)
    operation: SubtotalOperation = SubtotalOperation.SUM
    factor: float = 1.0


class Worksheet(CamelModel):
    title: str = ""
    line_items: list[LineItem] = Field(default_factory=list)
    subtotals: list[Subtotal] = Field(default_factory=list)
    total_refund: int = 0
    assumptions: list[str] = Field(default_factory=list)
    user_overrides: dict[str, Value] = Field(default_factory=dict)

    @model_validator(mode="after")
    def line_item_keys_unique(self) -> Worksheet:
        seen: set[str] = set()
        for item in self.line_items:
            if item.key in seen:
                raise ValueError(f"Duplicate line item key: {item.key}")
            seen.add(item.key)
        return self

    def item(self, key: str) -> Optional[LineItem]:
        for line in self.line_items:
            if line.key == key:
                return line
        return None


class Opportunity(CamelModel):
    """One detected tax-benefit opportunity within a scan."""

    id: str
    tax_benefit_code: str
    tax_benefit_name: str = ""
    estimated_refund: int = 0
    confidence: int = Field(default=50, ge=0, le=100)
    difficulty: Difficulty = Difficulty.MODERATE
    data_source: DataSource = DataSource.ESTIMATED
    applicable_years: list[int] = Field(default_factory=list)
    status: OpportunityStatus = OpportunityStatus.IDENTIFIED
    worksheet: Optional[Worksheet] = None
    description: str = ""
    eligibility_reason: str = ""
    legal_basis: list[str] = Field(default_factory=list)
    required_documents: list[str] = Field(default_factory=list)
    required_actions: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    estimated_processing_time: str = ""
    is_amended_return: bool = False


class TaxScanResult(CamelModel):
    id: str
    scanned_at: str
    opportunities: list[Opportunity] = Field(default_factory=list)
    total_estimated_refund: int = 0
    opportunity_count: int = 0
    data_completeness: int = Field(default=0, ge=0, le=100)
    data_sources: dict[str, bool] = Field(default_factory=dict)
    company_snapshot: dict[str, Union[str, int]] = Field(default_factory=dict)
    summary: str = ""
    disclaimer: str = ""
