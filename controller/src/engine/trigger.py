"""
Trigger evaluation.

A Conditions block is a set of per-dimension constraints combined with AND.
Within a dimension an exclude match always wins over an include match.
"""

from fnmatch import fnmatchcase
from typing import Optional

from controller.src.models.event import Event, EventKind
from controller.src.models.pipeline import CONDITION_DIMENSIONS, Conditions, Constraint

SUCCESS_ONLY = Constraint(include=["success"])

def match_constraint(constraint: Optional[Constraint], value: Optional[str]) -> bool:
    """Check a single dimension value against its constraint."""
    if constraint is None:
        return True

    if value is not None:
        for pattern in constraint.exclude:
            if fnmatchcase(value, pattern):
                return False

    if constraint.include:
        if value is None:
            return False
        return any(fnmatchcase(value, pattern) for pattern in constraint.include)

    return True

def matches(conditions: Conditions, event: Event) -> bool:
    """Check every dimension of `conditions` against `event`."""
    context = event.context()
    return all(
        match_constraint(getattr(conditions, dimension), context[dimension])
        for dimension in CONDITION_DIMENSIONS
    )

def evaluate(trigger: Conditions, event: Event) -> bool:
    """
    Decide whether a pipeline trigger fires for `event`.

    Cron events are only visible to triggers that explicitly include a
    cron label.
    """
    if event.kind == EventKind.CRON:
        if trigger.cron is None or not trigger.cron.include:
            return False
    return matches(trigger, event)

def without_status(conditions: Conditions) -> Conditions:
    """Conditions with the status dimension dropped."""
    if conditions.status is None:
        return conditions
    return conditions.model_copy(update={"status": None})

def with_default_status(conditions: Conditions) -> Conditions:
    """Conditions that only run on success unless they say otherwise."""
    if conditions.status is not None:
        return conditions
    return conditions.model_copy(update={"status": SUCCESS_ONLY})
