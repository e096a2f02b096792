"""Opportunity status life cycle."""

from __future__ import annotations

import logging

from .errors import InvalidTransitionError
from .models import Opportunity, OpportunityStatus

logger = logging.getLogger(__name__)

S = OpportunityStatus

ALLOWED_TRANSITIONS: dict[OpportunityStatus, frozenset[OpportunityStatus]] = {
    S.IDENTIFIED: frozenset({S.REVIEWING, S.DISMISSED}),
    S.REVIEWING: frozenset({S.FILED, S.DISMISSED}),
    S.FILED: frozenset({S.RECEIVED, S.DISMISSED}),
    S.RECEIVED: frozenset(),
    S.DISMISSED: frozenset(),
}


def can_transition(current: OpportunityStatus, new: OpportunityStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def transition(opportunity: Opportunity, new_status: OpportunityStatus | str) -> Opportunity:
    """Move an opportunity to ``new_status`` or raise InvalidTransitionError.

    The opportunity is untouched when the transition is rejected.
    """
    try:
        target = OpportunityStatus(new_status)
    except ValueError:
        raise InvalidTransitionError(f"Unknown status: {new_status!r}") from None

    current = opportunity.status
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move opportunity {opportunity.id} from {current.value} to {target.value}"
        )
    opportunity.status = target
    logger.info("Opportunity %s: %s -> %s", opportunity.id, current.value, target.value)
    return opportunity
