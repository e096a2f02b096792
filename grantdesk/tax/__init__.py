from .errors import (
    InvalidOverrideError,
    InvalidTransitionError,
    OpportunityNotFoundError,
    ScanNotFoundError,
    WorksheetError,
    WorksheetMissingError,
)
from .models import LineItem, Opportunity, OpportunityStatus, Subtotal, TaxScanResult, Worksheet
from .registry import OpportunityRegistry
from .service import TaxScanService
from .worksheet import WorksheetEngine, recalculate

__all__ = [
    "InvalidOverrideError",
    "InvalidTransitionError",
    "LineItem",
    "Opportunity",
    "OpportunityNotFoundError",
    "OpportunityRegistry",
    "OpportunityStatus",
    "ScanNotFoundError",
    "Subtotal",
    "TaxScanResult",
    "TaxScanService",
    "Worksheet",
    "WorksheetEngine",
    "WorksheetError",
    "WorksheetMissingError",
    "recalculate",
]
