"""
Condition Evaluator

Pure predicate over an event and a rule's condition document. All keys
are AND-combined. Unknown keys are configuration errors: they are logged
and the rule does not match, so a typo never widens fan-out.
"""

import logging
from collections.abc import Callable
from typing import Any

from effects_core.contracts.event import SystemEvent

logger = logging.getLogger(__name__)


def _payload_has(event: SystemEvent, fields: Any) -> bool:
    if isinstance(fields, str):
        fields = [fields]
    return all(f in event.payload for f in fields)


def _status_is(event: SystemEvent, value: Any) -> bool:
    return event.payload.get("status") == value


def _has_assigned_user(event: SystemEvent, expected: Any) -> bool:
    if expected is not True:
        raise ValueError(f"has_assigned_user only accepts true, got {expected!r}")
    return event.assigned_user_id is not None


PREDICATES: dict[str, Callable[[SystemEvent, Any], bool]] = {
    "payload_has": _payload_has,
    "status_is": _status_is,
    "has_assigned_user": _has_assigned_user,
}


def matches(event: SystemEvent, conditions: dict[str, Any] | None) -> bool:
    """
    Decide whether an event satisfies a rule's conditions.

    Args:
        event: The event being dispatched
        conditions: Condition document from the impact matrix (None = always)

    Returns:
        True if every condition holds
    """
    if not conditions:
        return True

    for key, value in conditions.items():
        predicate = PREDICATES.get(key)
        if predicate is None:
            logger.error(
                f"Unknown condition key '{key}', treating rule as not matching",
                extra={"event_id": str(event.id), "event_name": event.event_name, "condition": key},
            )
            return False

        try:
            if not predicate(event, value):
                return False
        except (TypeError, ValueError, AttributeError) as e:
            logger.error(
                f"Malformed condition '{key}': {e}",
                extra={"event_id": str(event.id), "condition": key},
            )
            return False

    return True
