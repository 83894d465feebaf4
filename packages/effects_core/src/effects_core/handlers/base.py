"""
Effect Handler Base

Interface every effect handler implements, plus the context it receives
and the result it returns.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.rules import EffectRule


@dataclass
class EffectResult:
    """Result of one handler invocation."""

    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "EffectResult":
        """Create a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, data: Any = None) -> "EffectResult":
        """Create a failed result (goes through the retry policy)."""
        return cls(success=False, data=data, error=error)

    @classmethod
    def coerce(cls, value: Any) -> "EffectResult":
        """
        Normalise a handler return value.

        Accepts an EffectResult or a {success, data, error} dict; anything
        else raises TypeError.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, dict) and "success" in value:
            return cls(
                success=bool(value["success"]),
                data=value.get("data"),
                error=value.get("error"),
            )
        raise TypeError(f"Handler returned {type(value).__name__}, expected EffectResult")


@dataclass(frozen=True)
class EffectContext:
    """
    Everything a handler may use to perform its effect.

    Attributes:
        event: The triggering event
        rule: The impact matrix rule being executed
        targets: Resolved audience (user ids, possibly empty)
        settings: Tenant settings for the effect type
    """

    event: SystemEvent
    rule: EffectRule
    targets: list[str] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)


class EffectHandler(ABC):
    """
    Abstract effect handler.

    Handlers report expected failures with EffectResult.fail(); raised
    exceptions are treated the same way by the engine.
    """

    @abstractmethod
    def execute(self, context: EffectContext) -> EffectResult:
        """Perform the effect."""
        pass
