"""Exceptions raised by the dispatch engine."""

from typing import Any


class EffectsError(Exception):
    """Base error for the effect dispatch engine."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class EventNotFoundError(EffectsError):
    """The referenced system event does not exist."""

    def __init__(self, event_id: Any):
        super().__init__(
            f"Event not found: {event_id}",
            code="EVENT_NOT_FOUND",
            details={"event_id": str(event_id)},
        )
        self.event_id = event_id


class RuleConfigurationError(EffectsError):
    """An impact matrix row could not be parsed into an EffectRule."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_RULE", details=details)


class HandlerTimeoutError(EffectsError):
    """An effect handler did not return within the allowed time."""

    def __init__(self, effect_type: str, timeout: float):
        super().__init__(
            f"Handler for {effect_type} timed out after {timeout:g}s",
            code="HANDLER_TIMEOUT",
            details={"effect_type": effect_type, "timeout": timeout},
        )
