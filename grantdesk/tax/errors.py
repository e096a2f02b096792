"""Errors raised by worksheet and opportunity operations.

None of them leave a partial mutation behind.
"""


class WorksheetError(Exception):
    """Base class for rejected worksheet or opportunity operations."""


class WorksheetMissingError(WorksheetError):
    """An override was requested before a worksheet was generated."""


class InvalidOverrideError(WorksheetError):
    """Override key is unknown, not editable, or its value has the wrong type."""


class InvalidTransitionError(WorksheetError):
    """The requested status change is not an allowed transition."""


class OpportunityNotFoundError(KeyError):
    """No opportunity with the requested id in the scan."""


class ScanNotFoundError(KeyError):
    """No stored tax scan with the requested id."""


class CompanyProfileMissingError(Exception):
    """A tax scan needs a stored company profile."""
