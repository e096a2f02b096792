from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .models import Opportunity, Worksheet

# Global registry -- maps tax_benefit_code -> WorksheetTemplate
_REGISTRY: dict[str, WorksheetTemplate] = {}

TemplateFn = Callable[[Opportunity, dict[str, Any]], Worksheet]


@dataclass(frozen=True)
class WorksheetTemplate:
    """A deterministic worksheet layout for one tax benefit."""

    code: str
    label: str
    legal_basis: str
    build_fn: TemplateFn


def register_template(code: str, label: str, legal_basis: str = "") -> Callable:
    """Decorator to register a worksheet builder for a tax benefit code."""

    def decorator(fn: TemplateFn) -> TemplateFn:
        _REGISTRY[code] = WorksheetTemplate(
            code=code,
            label=label,
            legal_basis=legal_basis,
            build_fn=fn,
        )
        return fn

    return decorator


def get_template(code: str) -> Optional[WorksheetTemplate]:
    """Look up a template by tax benefit code."""
    return _REGISTRY.get(code)


def get_all_templates() -> dict[str, WorksheetTemplate]:
    """Return the full registry (read-only copy)."""
    return dict(_REGISTRY)
