"""WorksheetEngine: builds worksheets and keeps their totals consistent.

Totals are always recomputed from scratch:

    line items -> subtotals (factor * op(values of the subtotal's keys))
               -> total (sum of subtotals, or the sum of numeric 원 items
                  when there are no subtotals)

The subtotal grouping is fixed at generation time. Overrides change
values, never structure.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

from pydantic import ValidationError

from grantdesk.analyzer.base import Analyzer
from grantdesk.pipeline.pacing import PaceLimiter

from . import templates  # noqa: F401  (registers the built-in templates)
from .errors import InvalidOverrideError, InvalidTransitionError, WorksheetError, WorksheetMissingError
from .models import (
    DataSource,
    LineItem,
    LineItemSource,
    Opportunity,
    OpportunityStatus,
    Subtotal,
    SubtotalOperation,
    Value,
    Worksheet,
    is_number,
)
from .status import transition
from .template_registry import get_template

logger = logging.getLogger(__name__)

CURRENCY_UNIT = "원"

# Sources whose numbers a template can lay out without asking the Analyzer.
TEMPLATE_SOURCES = (DataSource.COMPANY_PROFILE, DataSource.ESTIMATED)


def subtotal_amount(subtotal: Subtotal, values: dict[str, float]) -> int:
    numbers = [values.get(key, 0) for key in subtotal.keys]
    if not numbers:
        return 0
    if subtotal.operation is SubtotalOperation.PRODUCT:
        raw = math.prod(numbers)
    else:
        raw = sum(numbers)
    return int(round(subtotal.factor * raw))


def compute_total(line_items: list[LineItem], subtotals: list[Subtotal]) -> int:
    """Pure total over line items through the subtotal grouping."""
    if subtotals:
        values = {item.key: item.value for item in line_items if item.is_numeric}
        return sum(subtotal_amount(s, values) for s in subtotals)
    return sum(
        int(round(item.value))
        for item in line_items
        if item.is_numeric and item.unit == CURRENCY_UNIT
    )


def recalculate(worksheet: Worksheet) -> Worksheet:
    """Return a copy with every subtotal amount and the total recomputed."""
    result = worksheet.model_copy(deep=True)
    values = {item.key: item.value for item in result.line_items if item.is_numeric}
    for subtotal in result.subtotals:
        subtotal.amount = subtotal_amount(subtotal, values)
    result.total_refund = compute_total(result.line_items, result.subtotals)
    return result


def _coerce(item: LineItem, value: Any) -> Value:
    """Check an override value against the item it replaces."""
    if isinstance(value, bool) or value is None:
        raise InvalidOverrideError(f"Invalid value for {item.key}: {value!r}")
    if not item.is_numeric:
        return value if isinstance(value, str) else str(value)
    if is_number(value):
        return value
    if isinstance(value, str):
        text = value.replace(",", "").strip()
        try:
            return int(text)
        except ValueError:
            try:
                return float(text)
            except ValueError:
                pass
    raise InvalidOverrideError(f"{item.key} expects a number, got {value!r}")


class WorksheetEngine:
    """Generates worksheets and applies user overrides to them."""

    def __init__(
        self,
        analyzer: Optional[Analyzer] = None,
        pacer: Optional[PaceLimiter] = None,
    ) -> None:
        self._analyzer = analyzer
        self._pacer = pacer or PaceLimiter(0, name="worksheet-analyzer")

    async def generate(
        self, opportunity: Opportunity, context: Optional[dict[str, Any]] = None
    ) -> Worksheet:
        """Build the worksheet for an ``identified`` opportunity.

        Regenerating is not guarded here; callers check ``worksheet`` first.
        """
        if opportunity.status is not OpportunityStatus.IDENTIFIED:
            raise InvalidTransitionError(
                f"Worksheets are generated for identified opportunities, "
                f"not {opportunity.status.value}"
            )
        context = context or {}
        draft = await self._draft(opportunity, context)
        worksheet = recalculate(draft.model_copy(update={"user_overrides": {}}))

        transition(opportunity, OpportunityStatus.REVIEWING)
        opportunity.worksheet = worksheet
        opportunity.estimated_refund = worksheet.total_refund
        logger.info(
            "Worksheet for %s (%s): %d line items, total %d",
            opportunity.id,
            opportunity.tax_benefit_code,
            len(worksheet.line_items),
            worksheet.total_refund,
        )
        return worksheet

    async def _draft(self, opportunity: Opportunity, context: dict[str, Any]) -> Worksheet:
        template = get_template(opportunity.tax_benefit_code)
        if template is not None and (
            opportunity.data_source in TEMPLATE_SOURCES or self._analyzer is None
        ):
            return template.build_fn(opportunity, context)
        if self._analyzer is None:
            raise WorksheetError(
                f"No worksheet template for {opportunity.tax_benefit_code} and no analyzer"
            )
        try:
            raw = await self._pacer.call(
                self._analyzer.generate_worksheet,
                opportunity.model_dump(by_alias=True, mode="json"),
                context,
            )
            return self.validate_draft(raw)
        except Exception as e:
            if template is None:
                raise
            logger.warning(
                "Analyzer worksheet failed for %s, using template: %s", opportunity.id, e
            )
            return template.build_fn(opportunity, context)

    @staticmethod
    def validate_draft(raw: dict[str, Any]) -> Worksheet:
        """Parse an Analyzer draft, dropping subtotals that cannot be recomputed."""
        try:
            draft = Worksheet.model_validate(raw)
        except ValidationError as e:
            raise WorksheetError(f"Malformed worksheet draft: {e}") from e

        numeric = {item.key for item in draft.line_items if item.is_numeric}
        kept = []
        for subtotal in draft.subtotals:
            if subtotal.keys and all(key in numeric for key in subtotal.keys):
                kept.append(subtotal)
            else:
                logger.warning("Dropping subtotal %r without valid line item keys", subtotal.label)
        draft.subtotals = kept
        return draft

    def apply_override(self, opportunity: Opportunity, key: str, value: Any) -> Worksheet:
        return self.apply_overrides(opportunity, {key: value})

    def apply_overrides(self, opportunity: Opportunity, overrides: dict[str, Any]) -> Worksheet:
        """Replace editable line item values and recompute everything.

        All keys are validated before anything changes; a rejected override
        leaves the worksheet and estimated refund as they were.
        """
        worksheet = opportunity.worksheet
        if worksheet is None:
            raise WorksheetMissingError(f"Opportunity {opportunity.id} has no worksheet yet")
        if not overrides:
            raise InvalidOverrideError("No overrides given")

        checked: dict[str, Value] = {}
        for key, value in overrides.items():
            item = worksheet.item(key)
            if item is None:
                raise InvalidOverrideError(f"Unknown line item: {key}")
            if not item.editable:
                raise InvalidOverrideError(f"Line item {key} is not editable")
            checked[key] = _coerce(item, value)

        updated = worksheet.model_copy(deep=True)
        for key, value in checked.items():
            item = updated.item(key)
            item.value = value
            item.source = LineItemSource.USER_INPUT
            updated.user_overrides[key] = value
        updated = recalculate(updated)

        opportunity.worksheet = updated
        opportunity.estimated_refund = updated.total_refund
        return updated
